from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar
from urllib.parse import urlencode

import httpx
from fastapi import Response

from archauth.logging import get_logger
from archauth.service.errors import AuthenticationError, TokenInvalid
from archauth.service.sessions import CookiePolicy, run_store_call
from archauth.service.tokens import OAUTH_SESSION_TOKEN_TYPE, HS256Signer, generate_uuid_token
from archauth.storage.models import OAuthAccount, User

logger = get_logger(__name__)

OAUTH_SESSION_COOKIE = "oauth_session"
OAUTH_STATE_TTL = timedelta(minutes=10)

GOOGLE_PROVIDER = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v3/userinfo",
    "scope": "openid email profile",
}

T = TypeVar("T")


class OAuthUserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(self, email: str, **kwargs: Any) -> User: ...

    def sync_oauth_account(
        self, account: OAuthAccount, *, avatar_url: Optional[str] = None
    ) -> User: ...


@dataclass(frozen=True)
class FederatedProfile:
    """Identity asserted by the provider after a successful code exchange."""

    provider: str
    provider_account_id: str
    email: str
    email_verified: bool = True
    name: Optional[str] = None
    image: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = field(default=None, repr=False)

    def to_account(self, user_id: str) -> OAuthAccount:
        return OAuthAccount(
            user_id=user_id,
            provider=self.provider,
            provider_account_id=self.provider_account_id,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            token_type=self.token_type,
            scope=self.scope,
            id_token=self.id_token,
        )


@dataclass(frozen=True)
class OAuthSessionClaims:
    user_id: str
    email: str
    role: str
    avatar_ref: Optional[str] = None
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)


def resolve_avatar_ref(stored: Optional[str], provider_image: Optional[str]) -> Optional[str]:
    """Stored avatar wins over the provider's image; neither means no avatar."""
    return stored or provider_image or None


class OAuthSessionAdapter:
    """Federated sign-in that mints its own short-lived session token.

    Independent of the access/refresh cookie pair: separate secret, separate
    cookie, same 15 minute lifetime as an access token. The user row is
    shared, keyed by email.
    """

    def __init__(
        self,
        store: OAuthUserStore,
        secret: Optional[str],
        *,
        cookies: CookiePolicy,
        issuer: str = "architecture.lk",
        audience: str = "architecture.lk",
        ttl: timedelta = timedelta(minutes=15),
        leeway_seconds: int = 0,
        store_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cookies = cookies
        self.ttl = ttl
        self.store_timeout = store_timeout
        self._signer = HS256Signer(
            secret,
            issuer=issuer,
            audience=audience,
            token_type=OAUTH_SESSION_TOKEN_TYPE,
            leeway_seconds=leeway_seconds,
            clock=clock,
        )

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_store_call(fn, *args, timeout=self.store_timeout, **kwargs)

    async def complete_sign_in(self, profile: FederatedProfile) -> tuple[User, str]:
        """Reconcile the provider identity with the user store and issue a token.

        Any failure along the way aborts the sign-in; nothing is returned for a
        half-synced user.
        """
        if not profile.email or not profile.email_verified:
            logger.warning("oauth_email_unverified", provider=profile.provider)
            raise AuthenticationError("OAuth sign-in failed", error_code="oauth_failed")
        try:
            user = await self._call(self.store.get_user_by_email, profile.email)
            if user is None:
                user = await self._call(
                    self.store.create_user,
                    profile.email,
                    full_name=profile.name or profile.email,
                    avatar_url=profile.image,
                    email_verified=True,
                    oauth_account=profile.to_account(""),
                )
                logger.info("oauth_user_created", user_id=user.id, provider=profile.provider)
            else:
                # Avatar sync is provider -> local only.
                avatar = profile.image if profile.image != user.avatar_url else None
                user = await self._call(
                    self.store.sync_oauth_account, profile.to_account(user.id), avatar_url=avatar
                )
        except Exception as exc:
            logger.error(
                "oauth_sign_in_failed",
                provider=profile.provider,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise AuthenticationError("OAuth sign-in failed", error_code="oauth_failed") from exc

        token = self.issue_session_token(user, provider_image=profile.image)
        return user, token

    def issue_session_token(self, user: User, *, provider_image: Optional[str] = None) -> str:
        claims = {"userId": user.id, "email": user.email, "role": user.role}
        avatar_ref = resolve_avatar_ref(user.avatar_url, provider_image)
        if avatar_ref:
            claims["avatarRef"] = avatar_ref
        return self._signer.encode(claims, self.ttl)

    def verify_session_token(self, token: str) -> OAuthSessionClaims:
        payload = self._signer.decode(token)
        user_id, email, role = payload.get("userId"), payload.get("email"), payload.get("role")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise TokenInvalid("claims")
        return OAuthSessionClaims(
            user_id=user_id,
            email=email,
            role=role if isinstance(role, str) else "user",
            avatar_ref=payload.get("avatarRef"),
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )

    async def read_session(self, token: str) -> OAuthSessionClaims:
        """Verify the token, then refresh role and avatar from the user row.

        Store trouble keeps the claims already in the token.
        """
        claims = self.verify_session_token(token)
        try:
            user = await self._call(self.store.get_user_by_email, claims.email)
        except Exception as exc:
            logger.warning("oauth_session_hydrate_failed", error=str(exc))
            return claims
        if user is None:
            return claims
        return OAuthSessionClaims(
            user_id=user.id,
            email=user.email,
            role=user.role,
            avatar_ref=resolve_avatar_ref(user.avatar_url, claims.avatar_ref),
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )

    def set_cookie(self, response: Response, token: str) -> None:
        self.cookies.set(response, OAUTH_SESSION_COOKIE, token, self.ttl)

    def clear_cookie(self, response: Response) -> None:
        self.cookies.clear(response, OAUTH_SESSION_COOKIE)


class OAuthStateStore(Protocol):
    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime, redirect_to: Optional[str] = None
    ) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[dict]: ...


class MemoryOAuthStateStore:
    """Process-local OAuth ``state`` values; each can be popped once."""

    def __init__(self) -> None:
        self._states: Dict[str, dict] = {}
        self._lock = threading.Lock()

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime, redirect_to: Optional[str] = None
    ) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            for key in [k for k, v in self._states.items() if v["expires_at"] <= now]:
                self._states.pop(key, None)
            self._states[state] = {
                "provider": provider,
                "expires_at": expires_at,
                "redirect_to": redirect_to,
            }

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        with self._lock:
            data = self._states.pop(state, None)
        if data is None or data["expires_at"] <= datetime.now(timezone.utc):
            return None
        return data


class GoogleOAuthClient:
    """Authorization-code flow against Google using httpx."""

    provider = "google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Optional[FederatedProfile]:
        """Trade the callback ``code`` for a verified profile, or None on any failure."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.provider)
                    return None
                expires_in = token_result.get("expires_in")
                expires_at = int(time.time()) + int(expires_in) if expires_in else None

                userinfo_response = await client.get(
                    GOOGLE_PROVIDER["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, TypeError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.provider, error=str(exc))
            return None

        if not isinstance(userinfo, dict) or not userinfo.get("sub") or not userinfo.get("email"):
            logger.error("oauth_userinfo_incomplete", provider=self.provider)
            return None
        return FederatedProfile(
            provider=self.provider,
            provider_account_id=str(userinfo["sub"]),
            email=userinfo["email"],
            email_verified=bool(userinfo.get("email_verified")),
            name=userinfo.get("name"),
            image=userinfo.get("picture"),
            access_token=access_token,
            refresh_token=token_result.get("refresh_token"),
            expires_at=expires_at,
            token_type=token_result.get("token_type"),
            scope=token_result.get("scope"),
            id_token=token_result.get("id_token"),
        )


def new_oauth_state() -> str:
    return generate_uuid_token().replace("-", "")
