from __future__ import annotations

import secrets
from typing import Optional
from urllib.parse import quote

DICEBEAR_STYLES = (
    "avataaars",
    "personas",
    "initials",
    "micah",
    "miniavs",
    "open-peeps",
    "pixel-art",
    "thumbs",
)
DICEBEAR_BASE_URL = "https://api.dicebear.com/7.x"


def generate_random_avatar(seed: Optional[str] = None) -> str:
    """Pick a random DiceBear style for a new account without a profile picture.

    The seed (normally the email) keeps the drawing stable for the user; the
    style is chosen at random.
    """
    avatar_seed = seed or secrets.token_hex(6)
    style = secrets.choice(DICEBEAR_STYLES)
    return avatar_url_for_style(style, avatar_seed)


def avatar_url_for_style(style: str, seed: str, *, size: int = 200) -> str:
    if style not in DICEBEAR_STYLES:
        raise ValueError(f"unknown avatar style: {style}")
    return f"{DICEBEAR_BASE_URL}/{style}/svg?seed={quote(seed, safe='')}&size={size}"
