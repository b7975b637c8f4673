"""Tests for the cookie session manager."""

import asyncio
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi import Response

from archauth.service.sessions import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    CookiePolicy,
    CookieSessionManager,
    run_store_call,
)
from archauth.service.tokens import TokenCodec, hash_token
from archauth.storage.errors import StoreUnavailable
from archauth.storage.models import utcnow


def _set_cookies(response: Response) -> dict:
    """Map cookie name -> raw Set-Cookie header for a response."""
    cookies = {}
    for key, value in response.raw_headers:
        if key == b"set-cookie":
            header = value.decode()
            cookies[header.split("=", 1)[0]] = header
    return cookies


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("a@b.com", full_name="A B", password_hash="x")


class TestCreateSession:
    async def test_sets_cookie_pair_and_persists_hash_only(self, session_manager, memory_store, user):
        response = Response()
        issued = await session_manager.create_session(user, response)

        cookies = _set_cookies(response)
        assert set(cookies) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}
        assert "Max-Age=900" in cookies[ACCESS_TOKEN_COOKIE]
        assert f"Max-Age={7 * 24 * 3600}" in cookies[REFRESH_TOKEN_COOKIE]
        for header in cookies.values():
            assert "; HttpOnly" in header
            assert "SameSite=lax" in header
            assert "Path=/" in header
            assert "; Secure" not in header

        rows = memory_store.list_user_sessions(user.id)
        assert len(rows) == 1
        assert rows[0].id == issued.session_id
        assert rows[0].refresh_token_hash == hash_token(issued.refresh_token)
        assert rows[0].refresh_token_hash != issued.refresh_token
        delta = rows[0].expires_at - utcnow()
        assert timedelta(days=6, hours=23) < delta <= timedelta(days=7)

    async def test_store_never_receives_plaintext_refresh_token(self, session_manager, memory_store, user):
        seen = []
        original = memory_store.create_session

        def spy(*args, **kwargs):
            seen.append((args, kwargs))
            return original(*args, **kwargs)

        with patch.object(memory_store, "create_session", side_effect=spy):
            issued = await session_manager.create_session(user, Response())
        flattened = [str(a) for args, kwargs in seen for a in (*args, *kwargs.values())]
        assert issued.refresh_token not in flattened
        assert hash_token(issued.refresh_token) in flattened

    async def test_secure_flag_and_domain_follow_policy(self, memory_store, codec, user):
        manager = CookieSessionManager(
            memory_store, codec, CookiePolicy(secure=True, domain="architecture.lk")
        )
        response = Response()
        await manager.create_session(user, response)
        for header in _set_cookies(response).values():
            assert "; Secure" in header
            assert "Domain=architecture.lk" in header

    async def test_store_failure_propagates(self, session_manager, memory_store, user):
        response = Response()
        with patch.object(memory_store, "create_session", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                await session_manager.create_session(user, response)
        assert _set_cookies(response) == {}


class TestRefresh:
    async def test_mints_new_access_cookie_only(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        before = memory_store.get_session(issued.session_id).last_used_at

        response = Response()
        refreshed = await session_manager.refresh(
            {REFRESH_TOKEN_COOKIE: issued.refresh_token}, response
        )
        assert refreshed is not None
        assert refreshed.user.id == user.id
        assert set(_set_cookies(response)) == {ACCESS_TOKEN_COOKIE}
        assert session_manager.codec.verify_access_token(refreshed.access_token).user_id == user.id
        assert memory_store.get_session(issued.session_id).last_used_at >= before

    async def test_missing_cookie_fails_closed(self, session_manager):
        response = Response()
        assert await session_manager.refresh({}, response) is None
        assert _set_cookies(response) == {}

    async def test_invalid_token_fails_closed(self, session_manager):
        response = Response()
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: "junk"}, response) is None
        assert _set_cookies(response) == {}

    async def test_non_ascii_signature_fails_closed(self, session_manager, user):
        issued = await session_manager.create_session(user, Response())
        head, body, _sig = issued.refresh_token.split(".")
        response = Response()
        forged = f"{head}.{body}.\u00e9\u00e9"
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: forged}, response) is None
        assert _set_cookies(response) == {}

    async def test_deleted_session_fails_closed(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        memory_store.delete_session(issued.session_id)
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: issued.refresh_token}, Response()) is None

    async def test_expired_session_row_fails_closed(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        memory_store.sessions[issued.session_id].expires_at = utcnow() - timedelta(seconds=1)
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: issued.refresh_token}, Response()) is None

    async def test_user_mismatch_fails_closed(self, session_manager, memory_store, codec, user):
        other = memory_store.create_user("c@d.com", full_name="C D")
        session_id = "sess-forged"
        forged = codec.sign_refresh_token(other.id, session_id)
        memory_store.create_session(user.id, hash_token(forged), utcnow() + timedelta(days=1), session_id=session_id)
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: forged}, Response()) is None

    async def test_store_error_fails_closed(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        with patch.object(
            memory_store, "get_session_by_refresh_token_hash", side_effect=RuntimeError("db down")
        ):
            result = await session_manager.refresh(
                {REFRESH_TOKEN_COOKIE: issued.refresh_token}, Response()
            )
        assert result is None

    async def test_concurrent_refreshes_both_succeed(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        cookies = {REFRESH_TOKEN_COOKIE: issued.refresh_token}
        first, second = await asyncio.gather(
            session_manager.refresh(cookies, Response()),
            session_manager.refresh(cookies, Response()),
        )
        assert first is not None and second is not None
        for result in (first, second):
            assert session_manager.codec.verify_access_token(result.access_token).user_id == user.id
        assert memory_store.get_session(issued.session_id) is not None

    async def test_refresh_token_is_not_rotated(self, session_manager, user):
        issued = await session_manager.create_session(user, Response())
        cookies = {REFRESH_TOKEN_COOKIE: issued.refresh_token}
        for _ in range(3):
            assert await session_manager.refresh(cookies, Response()) is not None


class TestLogout:
    async def test_deletes_session_and_clears_cookies(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        response = Response()
        assert await session_manager.logout({REFRESH_TOKEN_COOKIE: issued.refresh_token}, response)
        assert memory_store.get_session(issued.session_id) is None
        cleared = _set_cookies(response)
        assert set(cleared) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}
        assert all("Max-Age=0" in header for header in cleared.values())

    async def test_clears_cookies_when_store_raises(self, session_manager, memory_store, user):
        issued = await session_manager.create_session(user, Response())
        response = Response()
        with patch.object(
            memory_store, "get_session_by_refresh_token_hash", side_effect=RuntimeError("db down")
        ):
            deleted = await session_manager.logout(
                {REFRESH_TOKEN_COOKIE: issued.refresh_token}, response
            )
        assert deleted is False
        assert set(_set_cookies(response)) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}

    async def test_is_idempotent_without_cookies(self, session_manager):
        response = Response()
        assert await session_manager.logout({}, response) is False
        assert set(_set_cookies(response)) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}

    async def test_logout_all_sessions(self, session_manager, memory_store, user):
        for _ in range(3):
            await session_manager.create_session(user, Response())
        response = Response()
        assert await session_manager.logout_all_sessions(user.id, response) == 3
        assert memory_store.list_user_sessions(user.id) == []
        assert set(_set_cookies(response)) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}

    async def test_logout_all_propagates_store_errors_but_clears(self, session_manager, memory_store, user):
        response = Response()
        with patch.object(memory_store, "delete_user_sessions", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                await session_manager.logout_all_sessions(user.id, response)
        assert set(_set_cookies(response)) == {ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE}


class TestStoreDeadline:
    async def test_slow_store_call_raises_store_unavailable(self):
        def slow_lookup():
            time.sleep(0.5)

        with pytest.raises(StoreUnavailable) as exc:
            await run_store_call(slow_lookup, timeout=0.05)
        assert exc.value.operation == "slow_lookup"

    async def test_purge_expired(self, session_manager, memory_store, user):
        memory_store.create_session(user.id, "h1", utcnow() - timedelta(seconds=1))
        memory_store.create_session(user.id, "h2", utcnow() + timedelta(days=1))
        assert await session_manager.purge_expired() == 1
        assert [s.refresh_token_hash for s in memory_store.list_user_sessions(user.id)] == ["h2"]


def test_codec_ttls_drive_cookie_max_age(memory_store):
    codec = TokenCodec("a-secret", "r-secret", access_ttl=timedelta(minutes=5), refresh_ttl=timedelta(days=1))
    manager = CookieSessionManager(memory_store, codec, CookiePolicy())
    response = Response()
    manager.set_session_cookies(response, "access", "refresh")
    cookies = _set_cookies(response)
    assert "Max-Age=300" in cookies[ACCESS_TOKEN_COOKIE]
    assert "Max-Age=86400" in cookies[REFRESH_TOKEN_COOKIE]
