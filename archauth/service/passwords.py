from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from archauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


@dataclass(frozen=True)
class PasswordStrength:
    valid: bool
    reason: Optional[str] = None


def validate_password_strength(password: Optional[str]) -> PasswordStrength:
    """Check a candidate password, reporting only the first rule it breaks.

    Rules are evaluated in a fixed order (presence, minimum length, maximum
    length, uppercase, lowercase, digit, special character) so the reason for
    a given input is stable.
    """
    if not password:
        return PasswordStrength(False, "Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        return PasswordStrength(
            False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        return PasswordStrength(
            False, f"Password must be less than {MAX_PASSWORD_LENGTH} characters long"
        )
    if not _UPPER_RE.search(password):
        return PasswordStrength(
            False, "Password must contain at least one uppercase letter"
        )
    if not _LOWER_RE.search(password):
        return PasswordStrength(
            False, "Password must contain at least one lowercase letter"
        )
    if not _DIGIT_RE.search(password):
        return PasswordStrength(False, "Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        return PasswordStrength(
            False, "Password must contain at least one special character"
        )
    return PasswordStrength(True)


def generate_random_password(length: int = 12) -> str:
    """Random password guaranteed to satisfy ``validate_password_strength``."""
    length = max(length, MIN_PASSWORD_LENGTH)
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(SPECIAL_CHARACTERS),
    ]
    alphabet = string.ascii_letters + string.digits + SPECIAL_CHARACTERS
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class PasswordUtility:
    """argon2id hashing with the library's own constant-time verification."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    @staticmethod
    def validate_strength(password: Optional[str]) -> PasswordStrength:
        return validate_password_strength(password)
