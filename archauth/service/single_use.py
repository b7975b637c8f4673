from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, TypeVar

from archauth.logging import get_logger, token_prefix
from archauth.service.errors import InvalidSingleUseToken
from archauth.service.sessions import run_store_call
from archauth.service.tokens import generate_random_token
from archauth.storage.models import EMAIL_VERIFICATION, PASSWORD_RESET, SingleUseToken, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class SingleUseTokenStore(Protocol):
    def create_single_use_token(
        self, kind: str, user_id: str, token: str, expires_at: datetime
    ) -> SingleUseToken: ...

    def get_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]: ...

    def consume_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]: ...

    def delete_user_single_use_tokens(self, kind: str, user_id: str) -> int: ...

    def purge_expired_single_use_tokens(self) -> int: ...


class SingleUseTokenService:
    """Email verification and password reset tokens.

    Tokens are opaque 32 character strings. A token is deleted when it is
    used, and every failure (unknown, expired, already used) surfaces as the
    same ``InvalidSingleUseToken``.
    """

    def __init__(
        self,
        store: SingleUseTokenStore,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.ttls = {EMAIL_VERIFICATION: verification_ttl, PASSWORD_RESET: reset_ttl}
        self.store_timeout = store_timeout

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_store_call(fn, *args, timeout=self.store_timeout, **kwargs)

    async def issue(self, kind: str, user_id: str, *, replace_existing: bool = False) -> str:
        if replace_existing:
            await self._call(self.store.delete_user_single_use_tokens, kind, user_id)
        expires_at = utcnow() + self.ttls[kind]
        token = generate_random_token(32)
        await self._call(self.store.create_single_use_token, kind, user_id, token, expires_at)
        logger.info(
            "single_use_token_issued",
            kind=kind,
            user_id=user_id,
            token_prefix=token_prefix(token),
            expires_at=expires_at.isoformat(),
        )
        return token

    async def issue_email_verification(self, user_id: str) -> str:
        return await self.issue(EMAIL_VERIFICATION, user_id, replace_existing=True)

    async def issue_password_reset(self, user_id: str) -> str:
        return await self.issue(PASSWORD_RESET, user_id, replace_existing=True)

    async def consume(self, kind: str, token: str) -> SingleUseToken:
        if not token:
            raise InvalidSingleUseToken()
        record = await self._call(self.store.consume_single_use_token, kind, token)
        if record is None:
            logger.info("single_use_token_rejected", kind=kind, token_prefix=token_prefix(token))
            raise InvalidSingleUseToken()
        return record

    async def is_valid(self, kind: str, token: str) -> bool:
        if not token:
            return False
        return await self._call(self.store.get_single_use_token, kind, token) is not None

    async def purge_expired(self) -> int:
        return await self._call(self.store.purge_expired_single_use_tokens)
