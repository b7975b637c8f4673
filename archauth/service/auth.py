from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar

from fastapi import Response

from archauth.logging import get_logger
from archauth.service.avatars import generate_random_avatar
from archauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidSingleUseToken,
    NotFoundError,
    ValidationError,
)
from archauth.service.passwords import PasswordUtility, generate_random_password
from archauth.service.sessions import CookieSessionManager, run_store_call
from archauth.service.single_use import SingleUseTokenService
from archauth.storage.errors import ConstraintViolation
from archauth.storage.models import EMAIL_VERIFICATION, PASSWORD_RESET, User

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254
INVALID_CREDENTIALS = "Invalid email or password"

T = TypeVar("T")


def normalize_email(value: Optional[str]) -> str:
    """Trim and syntax-check an email; case is preserved as given."""
    email = (value or "").strip()
    if not email:
        raise ValueError("Email is required")
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(email):
        raise ValueError("Invalid email format")
    return email


class UserStore(Protocol):
    def create_user(self, email: str, **kwargs: Any) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def reset_password(self, token: str, password_hash: str) -> Optional[User]: ...


@dataclass(frozen=True)
class Registration:
    user: User
    verification_token: Optional[str] = None


class AuthService:
    """Credential flows: registration, login, verification, reset, password change."""

    def __init__(
        self,
        store: UserStore,
        passwords: PasswordUtility,
        single_use: SingleUseTokenService,
        sessions: CookieSessionManager,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.single_use = single_use
        self.sessions = sessions
        self.store_timeout = store_timeout
        self.logger = logger
        # Verified against when the email is unknown so both failure paths cost one hash check.
        self._dummy_hash = passwords.hash(generate_random_password())

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_store_call(fn, *args, timeout=self.store_timeout, **kwargs)

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.passwords.hash, password)

    async def _verify(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.passwords.verify, password, password_hash)

    def _require_strong(self, password: str) -> None:
        strength = self.passwords.validate_strength(password)
        if not strength.valid:
            raise ValidationError(strength.reason or "Password is too weak", detail={"field": "password"})

    async def register(self, email: str, password: str, full_name: str) -> Registration:
        try:
            email = normalize_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name is required", detail={"field": "full_name"})
        self._require_strong(password)

        if await self._call(self.store.get_user_by_email, email):
            raise ConflictError("User with this email already exists")

        password_hash = await self._hash(password)
        try:
            user = await self._call(
                self.store.create_user,
                email,
                full_name=full_name,
                password_hash=password_hash,
                avatar_url=generate_random_avatar(email),
                email_verified=False,
            )
        except ConstraintViolation as exc:
            # A concurrent registration won the unique index.
            raise ConflictError("User with this email already exists") from exc
        self.logger.info("user_registered", user_id=user.id)

        verification_token = None
        try:
            verification_token = await self.single_use.issue_email_verification(user.id)
        except Exception as exc:
            self.logger.warning(
                "verification_token_issue_failed", user_id=user.id, error=str(exc)
            )
        return Registration(user=user, verification_token=verification_token)

    async def login(self, email: str, password: str) -> User:
        """Return the user for valid credentials.

        Unknown email, a federated-only account and a wrong password all raise
        the same AuthenticationError.
        """
        try:
            email = normalize_email(email)
        except ValueError:
            raise AuthenticationError(INVALID_CREDENTIALS) from None
        user = await self._call(self.store.get_user_by_email, email)
        if user is None or not user.password_hash:
            await self._verify(password or "", self._dummy_hash)
            self.logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self._verify(password or "", user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.passwords.needs_rehash(user.password_hash):
            try:
                upgraded = await self._hash(password)
                await self._call(self.store.update_user, user.id, password_hash=upgraded)
            except Exception as exc:
                self.logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))
        self.logger.info("login_succeeded", user_id=user.id)
        return user

    async def verify_email(self, token: str) -> User:
        record = await self.single_use.consume(EMAIL_VERIFICATION, token)
        user = await self._call(self.store.mark_email_verified, record.user_id)
        if user is None:
            raise InvalidSingleUseToken()
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user_id: str) -> str:
        user = await self._call(self.store.get_user, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email already verified")
        return await self.single_use.issue_email_verification(user.id)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token when the account exists and has a password.

        Callers answer identically whether or not a token was issued; the
        return value is only surfaced in test mode.
        """
        try:
            user = await self._call(self.store.get_user_by_email, email)
            if user is None or not user.password_hash:
                self.logger.info("password_reset_requested", matched=False)
                return None
            token = await self.single_use.issue_password_reset(user.id)
            self.logger.info("password_reset_requested", matched=True, user_id=user.id)
            return token
        except Exception as exc:
            self.logger.error("password_reset_request_failed", error=str(exc))
            return None

    async def is_reset_token_valid(self, token: str) -> bool:
        return await self.single_use.is_valid(PASSWORD_RESET, token)

    async def reset_password_with_token(self, token: str, new_password: str) -> User:
        self._require_strong(new_password)
        if not token:
            raise InvalidSingleUseToken()
        password_hash = await self._hash(new_password)
        user = await self._call(self.store.reset_password, token, password_hash)
        if user is None:
            raise InvalidSingleUseToken()
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        response: Optional[Response] = None,
    ) -> User:
        user = await self._call(self.store.get_user, user_id)
        if user is None:
            raise AuthenticationError("Authentication required")
        if not user.password_hash or not await self._verify(current_password or "", user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        self._require_strong(new_password)
        if current_password == new_password:
            raise ValidationError("New password must differ from the current password")

        # The new hash and the session revoke land together or not at all.
        try:
            updated = await self._call(
                self.store.replace_password, user.id, await self._hash(new_password)
            )
        finally:
            if response is not None:
                self.sessions.clear_session_cookies(response)
        if updated is None:
            raise AuthenticationError("Authentication required")
        self.logger.info("password_changed", user_id=user.id)
        return updated
