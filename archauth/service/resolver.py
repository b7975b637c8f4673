from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import ClassVar, Optional, Protocol, Sequence, Union

from fastapi import Request

from archauth.logging import get_logger
from archauth.service.errors import TokenError
from archauth.service.oauth import OAUTH_SESSION_COOKIE, OAuthSessionAdapter
from archauth.service.sessions import ACCESS_TOKEN_COOKIE
from archauth.service.tokens import TokenCodec

logger = get_logger(__name__)

USER_ID_HEADER = "x-user-id"


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str]
    role: str

    source: ClassVar[str] = "unknown"
    authenticated: ClassVar[bool] = True


@dataclass(frozen=True)
class OAuthIdentity(Identity):
    avatar_ref: Optional[str] = None

    source: ClassVar[str] = "oauth"


@dataclass(frozen=True)
class CookieIdentity(Identity):
    source: ClassVar[str] = "cookie"


@dataclass(frozen=True)
class HeaderIdentity(Identity):
    source: ClassVar[str] = "header"


@dataclass(frozen=True)
class Anonymous:
    source: ClassVar[str] = "anonymous"
    authenticated: ClassVar[bool] = False


ANONYMOUS = Anonymous()

AuthOutcome = Union[OAuthIdentity, CookieIdentity, HeaderIdentity, Anonymous]


class IdentityProvider(Protocol):
    name: str

    async def try_resolve(self, request: Request) -> Optional[Identity]: ...


class OAuthSessionProvider:
    name = "oauth_session"

    def __init__(self, adapter: OAuthSessionAdapter) -> None:
        self.adapter = adapter

    async def try_resolve(self, request: Request) -> Optional[Identity]:
        token = request.cookies.get(OAUTH_SESSION_COOKIE)
        if not token:
            return None
        try:
            claims = self.adapter.verify_session_token(token)
        except TokenError as exc:
            logger.debug("oauth_session_rejected", reason=exc.reason)
            return None
        return OAuthIdentity(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            avatar_ref=claims.avatar_ref,
        )


class CookieAccessTokenProvider:
    name = "access_cookie"

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    async def try_resolve(self, request: Request) -> Optional[Identity]:
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            return None
        try:
            claims = self.codec.verify_access_token(token)
        except TokenError as exc:
            logger.debug("access_cookie_rejected", reason=exc.reason)
            return None
        return CookieIdentity(user_id=claims.user_id, email=claims.email, role=claims.role)


class TrustedHeaderProvider:
    """Caller-asserted ``x-user-id``, honoured only from a trusted network edge.

    Disabled unless ``enabled`` is set. When enabled, the direct peer must sit
    inside one of ``trusted_networks``; forwarded-for headers are not
    consulted, since a public client can forge those. The role is always
    ``user``; the header can never grant admin.
    """

    name = "trust_header"

    def __init__(
        self,
        *,
        enabled: bool,
        trusted_networks: Sequence[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]],
    ) -> None:
        self.enabled = enabled
        self.trusted_networks = list(trusted_networks)

    def _peer_trusted(self, request: Request) -> bool:
        client = request.client
        if client is None or not client.host:
            return False
        try:
            peer = ipaddress.ip_address(client.host)
        except ValueError:
            return False
        return any(peer in network for network in self.trusted_networks)

    async def try_resolve(self, request: Request) -> Optional[Identity]:
        user_id = request.headers.get(USER_ID_HEADER)
        if not user_id or not user_id.strip():
            return None
        if not self.enabled or not self._peer_trusted(request):
            logger.debug(
                "trust_header_ignored",
                enabled=self.enabled,
                peer=request.client.host if request.client else None,
            )
            return None
        return HeaderIdentity(user_id=user_id.strip(), email=None, role="user")


class AuthResolver:
    """Ordered identity chain: first provider that yields an identity wins.

    ``resolve`` never raises and never mutates state; a provider that fails
    for any reason is skipped and the next one is asked.
    """

    def __init__(self, providers: Sequence[IdentityProvider]) -> None:
        self.providers = list(providers)

    async def resolve(self, request: Request) -> AuthOutcome:
        for provider in self.providers:
            try:
                identity = await provider.try_resolve(request)
            except Exception as exc:
                logger.warning(
                    "identity_provider_failed",
                    provider=provider.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if identity is not None:
                return identity
        return ANONYMOUS
