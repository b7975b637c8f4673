"""Tests for the ordered identity resolver and the trust header boundary."""

import ipaddress

import pytest
from starlette.requests import Request

from archauth.service.oauth import OAUTH_SESSION_COOKIE, OAuthSessionAdapter
from archauth.service.resolver import (
    ANONYMOUS,
    USER_ID_HEADER,
    AuthResolver,
    CookieAccessTokenProvider,
    CookieIdentity,
    HeaderIdentity,
    OAuthIdentity,
    OAuthSessionProvider,
    TrustedHeaderProvider,
)
from archauth.service.sessions import ACCESS_TOKEN_COOKIE, CookiePolicy

INTERNAL = [ipaddress.ip_network("10.0.0.0/8")]


def make_request(*, cookies=None, headers=None, client=("203.0.113.9", 52000)) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw_headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/auth/session",
        "headers": raw_headers,
        "query_string": b"",
        "client": client,
    }
    return Request(scope)


@pytest.fixture
def adapter(memory_store):
    return OAuthSessionAdapter(memory_store, "oauth-secret", cookies=CookiePolicy())


@pytest.fixture
def users(memory_store):
    return (
        memory_store.create_user("oauth@b.com", full_name="OAuth User", avatar_url="o.png"),
        memory_store.create_user("cookie@b.com", full_name="Cookie User"),
    )


def _resolver(adapter, codec, *, trust=False, networks=INTERNAL):
    return AuthResolver(
        [
            OAuthSessionProvider(adapter),
            CookieAccessTokenProvider(codec),
            TrustedHeaderProvider(enabled=trust, trusted_networks=networks),
        ]
    )


class TestPrecedence:
    async def test_oauth_session_wins_over_cookie(self, adapter, codec, users):
        oauth_user, cookie_user = users
        request = make_request(
            cookies={
                OAUTH_SESSION_COOKIE: adapter.issue_session_token(oauth_user),
                ACCESS_TOKEN_COOKIE: codec.sign_access_token(cookie_user.id, cookie_user.email, "admin"),
            },
            headers={USER_ID_HEADER: "header-user"},
            client=("10.1.2.3", 1),
        )
        identity = await _resolver(adapter, codec, trust=True).resolve(request)
        assert isinstance(identity, OAuthIdentity)
        assert identity.user_id == oauth_user.id
        assert identity.email == "oauth@b.com"
        assert identity.role == "user"
        assert identity.avatar_ref == "o.png"
        assert identity.source == "oauth"

    async def test_cookie_used_when_oauth_invalid(self, adapter, codec, users):
        _oauth_user, cookie_user = users
        request = make_request(
            cookies={
                OAUTH_SESSION_COOKIE: "garbage",
                ACCESS_TOKEN_COOKIE: codec.sign_access_token(cookie_user.id, cookie_user.email, "user"),
            }
        )
        identity = await _resolver(adapter, codec).resolve(request)
        assert isinstance(identity, CookieIdentity)
        assert identity.user_id == cookie_user.id

    async def test_access_token_in_oauth_cookie_is_rejected(self, adapter, codec, users):
        _oauth_user, cookie_user = users
        token = codec.sign_access_token(cookie_user.id, cookie_user.email, "admin")
        request = make_request(cookies={OAUTH_SESSION_COOKIE: token})
        assert await _resolver(adapter, codec).resolve(request) is ANONYMOUS

    async def test_no_credentials_is_anonymous(self, adapter, codec):
        identity = await _resolver(adapter, codec).resolve(make_request())
        assert identity is ANONYMOUS
        assert identity.authenticated is False

    async def test_failing_provider_is_skipped(self, adapter, codec, users):
        _oauth_user, cookie_user = users

        class Broken:
            name = "broken"

            async def try_resolve(self, request):
                raise RuntimeError("boom")

        resolver = AuthResolver([Broken(), CookieAccessTokenProvider(codec)])
        request = make_request(
            cookies={ACCESS_TOKEN_COOKIE: codec.sign_access_token(cookie_user.id, cookie_user.email, "user")}
        )
        identity = await resolver.resolve(request)
        assert identity.user_id == cookie_user.id

    async def test_resolution_does_not_touch_store(self, adapter, codec, users, memory_store):
        oauth_user, _ = users
        request = make_request(cookies={OAUTH_SESSION_COOKIE: adapter.issue_session_token(oauth_user)})
        memory_store.users.clear()
        identity = await _resolver(adapter, codec).resolve(request)
        assert identity.user_id == oauth_user.id


class TestTrustHeader:
    async def test_disabled_by_default(self, adapter, codec):
        request = make_request(headers={USER_ID_HEADER: "u-1"}, client=("10.0.0.5", 1))
        assert await _resolver(adapter, codec).resolve(request) is ANONYMOUS

    async def test_honoured_from_trusted_peer(self, adapter, codec):
        request = make_request(headers={USER_ID_HEADER: " u-1 "}, client=("10.0.0.5", 1))
        identity = await _resolver(adapter, codec, trust=True).resolve(request)
        assert isinstance(identity, HeaderIdentity)
        assert identity.user_id == "u-1"
        assert identity.email is None
        assert identity.role == "user"

    async def test_ignored_from_public_peer(self, adapter, codec):
        request = make_request(
            headers={USER_ID_HEADER: "u-1", "x-forwarded-for": "10.0.0.5"},
            client=("203.0.113.9", 1),
        )
        assert await _resolver(adapter, codec, trust=True).resolve(request) is ANONYMOUS

    async def test_ignored_without_peer_address(self, adapter, codec):
        request = make_request(headers={USER_ID_HEADER: "u-1"}, client=None)
        assert await _resolver(adapter, codec, trust=True).resolve(request) is ANONYMOUS

    async def test_ipv6_loopback_network(self, adapter, codec):
        networks = [ipaddress.ip_network("::1/128")]
        request = make_request(headers={USER_ID_HEADER: "u-1"}, client=("::1", 1))
        identity = await _resolver(adapter, codec, trust=True, networks=networks).resolve(request)
        assert identity.user_id == "u-1"

    async def test_blank_header_is_ignored(self, adapter, codec):
        request = make_request(headers={USER_ID_HEADER: "   "}, client=("10.0.0.5", 1))
        assert await _resolver(adapter, codec, trust=True).resolve(request) is ANONYMOUS
