from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

USER_ROLES = ("user", "admin")

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
SINGLE_USE_TOKEN_KINDS = (EMAIL_VERIFICATION, PASSWORD_RESET)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict:
        """Serializable view of the record without the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "email_verified": self.email_verified,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Session:
    """Revocation record for one refresh token.

    Only ``refresh_token_hash`` is kept; the raw token never reaches storage.
    """

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=now + ttl,
            created_at=now,
            last_used_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class SingleUseToken:
    token: str
    kind: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OAuthAccount:
    user_id: str
    provider: str
    provider_account_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
