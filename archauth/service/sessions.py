from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Protocol, TypeVar

from fastapi import Response

from archauth.logging import get_logger
from archauth.service.errors import TokenError
from archauth.service.tokens import TokenCodec, hash_token
from archauth.storage.errors import StoreUnavailable
from archauth.storage.models import Session, User, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

T = TypeVar("T")


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session: ...

    def get_session_by_refresh_token_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def purge_expired_sessions(self) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


async def run_store_call(
    fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call off the event loop with a hard deadline."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        operation = getattr(fn, "__name__", "store_call")
        logger.warning("store_call_timeout", operation=operation, timeout_seconds=timeout)
        raise StoreUnavailable(f"{operation} exceeded {timeout}s", operation=operation) from exc


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes shared by every auth cookie."""

    secure: bool = False
    domain: Optional[str] = None
    samesite: str = "lax"
    path: str = "/"

    def set(self, response: Response, name: str, value: str, max_age: timedelta) -> None:
        response.set_cookie(
            name,
            value,
            max_age=int(max_age.total_seconds()),
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def clear(self, response: Response, name: str) -> None:
        response.delete_cookie(
            name,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )


@dataclass(frozen=True)
class IssuedSession:
    session_id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshedAccess:
    user: User
    session_id: str
    access_token: str


class CookieSessionManager:
    """Owns the access/refresh cookie pair for one browser session.

    Anonymous -> Authenticated on ``create_session``; a ``refresh`` either
    returns to Authenticated with a new access cookie or fails closed and the
    caller treats the request as anonymous. Refresh tokens are not rotated:
    one refresh token keeps minting access tokens until it expires or its
    session row is deleted.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        cookies: CookiePolicy,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.codec = codec
        self.cookies = cookies
        self.store_timeout = store_timeout

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_store_call(fn, *args, timeout=self.store_timeout, **kwargs)

    def set_session_cookies(self, response: Response, access_token: str, refresh_token: str) -> None:
        self.cookies.set(response, ACCESS_TOKEN_COOKIE, access_token, self.codec.access_ttl)
        self.cookies.set(response, REFRESH_TOKEN_COOKIE, refresh_token, self.codec.refresh_ttl)

    def clear_session_cookies(self, response: Response) -> None:
        self.cookies.clear(response, ACCESS_TOKEN_COOKIE)
        self.cookies.clear(response, REFRESH_TOKEN_COOKIE)

    async def create_session(self, user: User, response: Response) -> IssuedSession:
        """Persist a session row and set both cookies.

        Store failures propagate: if the row cannot be written the login did
        not happen.
        """
        session_id = str(uuid.uuid4())
        access_token = self.codec.sign_access_token(user.id, user.email, user.role)
        refresh_token = self.codec.sign_refresh_token(user.id, session_id)
        expires_at = utcnow() + self.codec.refresh_ttl
        await self._call(
            self.store.create_session,
            user.id,
            hash_token(refresh_token),
            expires_at,
            session_id=session_id,
        )
        self.set_session_cookies(response, access_token, refresh_token)
        logger.info("session_created", user_id=user.id, session_id=session_id)
        return IssuedSession(
            session_id=session_id,
            user_id=user.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def refresh(
        self, request_cookies: Mapping[str, str], response: Response
    ) -> Optional[RefreshedAccess]:
        refresh_token = request_cookies.get(REFRESH_TOKEN_COOKIE)
        if not refresh_token:
            return None
        try:
            claims = self.codec.verify_refresh_token(refresh_token)
        except TokenError as exc:
            logger.info("refresh_token_rejected", reason=exc.reason)
            return None

        try:
            session = await self._call(
                self.store.get_session_by_refresh_token_hash, hash_token(refresh_token)
            )
            if session is None:
                logger.info("refresh_session_not_found", session_id=claims.session_id)
                return None
            if session.user_id != claims.user_id or session.id != claims.session_id:
                logger.warning(
                    "refresh_session_mismatch",
                    session_id=session.id,
                    claimed_session_id=claims.session_id,
                )
                return None
            user = await self._call(self.store.get_user, claims.user_id)
            if user is None:
                logger.warning("refresh_user_missing", user_id=claims.user_id)
                return None
            await self._call(self.store.touch_session, session.id)
        except Exception as exc:
            logger.warning("refresh_store_error", error=str(exc), error_type=type(exc).__name__)
            return None

        access_token = self.codec.sign_access_token(user.id, user.email, user.role)
        self.cookies.set(response, ACCESS_TOKEN_COOKIE, access_token, self.codec.access_ttl)
        return RefreshedAccess(user=user, session_id=session.id, access_token=access_token)

    async def logout(self, request_cookies: Mapping[str, str], response: Response) -> bool:
        """Best-effort session delete; the cookies are cleared no matter what.

        Returns True when a session row was found and deleted.
        """
        deleted = False
        try:
            refresh_token = request_cookies.get(REFRESH_TOKEN_COOKIE)
            if refresh_token:
                claims = self.codec.verify_refresh_token(refresh_token)
                session = await self._call(
                    self.store.get_session_by_refresh_token_hash, hash_token(refresh_token)
                )
                if session is not None and session.user_id == claims.user_id:
                    await self._call(self.store.delete_session, session.id)
                    deleted = True
                    logger.info("session_deleted", session_id=session.id)
        except TokenError as exc:
            logger.info("logout_token_rejected", reason=exc.reason)
        except Exception as exc:
            logger.warning("logout_store_error", error=str(exc), error_type=type(exc).__name__)
        finally:
            self.clear_session_cookies(response)
        return deleted

    async def logout_all_sessions(self, user_id: str, response: Optional[Response] = None) -> int:
        """Delete every session row for ``user_id`` and clear this request's cookies.

        Unlike ``logout`` a store failure propagates, since callers use this
        for security events where a silent partial revoke is not acceptable.
        """
        try:
            removed = await self._call(self.store.delete_user_sessions, user_id)
        finally:
            if response is not None:
                self.clear_session_cookies(response)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def purge_expired(self) -> int:
        return await self._call(self.store.purge_expired_sessions)
