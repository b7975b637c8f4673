"""Unit tests for credential flows and single-use tokens.

Covers:
- registration and login
- email verification
- password reset
- password change
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi import Response

from archauth.service.auth import AuthService, normalize_email
from archauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidSingleUseToken,
    ValidationError,
)
from archauth.service.sessions import REFRESH_TOKEN_COOKIE
from archauth.service.single_use import SingleUseTokenService
from archauth.storage.errors import StoreUnavailable
from archauth.storage.models import EMAIL_VERIFICATION, PASSWORD_RESET, utcnow

PASSWORD = "Abcdefg1!"


@pytest.fixture
def single_use(memory_store):
    return SingleUseTokenService(memory_store, store_timeout=2.0)


@pytest.fixture
def auth_service(memory_store, passwords, single_use, session_manager):
    return AuthService(memory_store, passwords, single_use, session_manager, store_timeout=2.0)


class TestNormalizeEmail:
    def test_trims_and_preserves_case(self):
        assert normalize_email("  Jane.Doe@Example.com ") == "Jane.Doe@Example.com"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_required(self, value):
        with pytest.raises(ValueError, match="Email is required"):
            normalize_email(value)

    @pytest.mark.parametrize("value", ["plain", "a@b", "a b@c.com", "@b.com", "a@b.c@d"])
    def test_invalid_format(self, value):
        with pytest.raises(ValueError, match="Invalid email format"):
            normalize_email(value)


class TestRegister:
    async def test_creates_unverified_user_with_avatar(self, auth_service, memory_store):
        registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        user = registration.user
        assert user.email == "a@b.com"
        assert user.full_name == "A B"
        assert user.email_verified is False
        assert user.role == "user"
        assert user.avatar_url.startswith("https://api.dicebear.com/")
        assert user.password_hash != PASSWORD
        assert registration.verification_token
        assert len(registration.verification_token) == 32
        stored = memory_store.get_single_use_token(EMAIL_VERIFICATION, registration.verification_token)
        assert stored.user_id == user.id
        assert timedelta(hours=23) < stored.expires_at - utcnow() <= timedelta(hours=24)

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        with pytest.raises(ConflictError, match="User with this email already exists"):
            await auth_service.register("a@b.com", PASSWORD, "Someone Else")

    async def test_email_lookup_is_case_sensitive(self, auth_service):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        other = await auth_service.register("A@b.com", PASSWORD, "A B")
        assert other.user.email == "A@b.com"

    async def test_weak_password_reports_first_rule(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register("a@b.com", "abcdefgh", "A B")
        assert exc.value.message == "Password must contain at least one uppercase letter"

    async def test_invalid_email(self, auth_service):
        with pytest.raises(ValidationError, match="Invalid email format"):
            await auth_service.register("not-an-email", PASSWORD, "A B")

    async def test_missing_name(self, auth_service):
        with pytest.raises(ValidationError, match="Full name is required"):
            await auth_service.register("a@b.com", PASSWORD, "  ")

    async def test_verification_token_failure_does_not_abort(self, auth_service, single_use):
        with patch.object(single_use, "issue_email_verification", side_effect=RuntimeError("boom")):
            registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        assert registration.user.id
        assert registration.verification_token is None


class TestLogin:
    async def test_valid_credentials(self, auth_service):
        created = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        user = await auth_service.login(" a@b.com ", PASSWORD)
        assert user.id == created.id

    async def test_unknown_and_wrong_password_look_identical(self, auth_service):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("nobody@b.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("a@b.com", "Wrong-pass1")
        assert unknown.value.message == wrong.value.message == "Invalid email or password"
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unknown_email_still_runs_a_hash_check(self, auth_service, passwords):
        with patch.object(passwords, "verify", wraps=passwords.verify) as verify:
            with pytest.raises(AuthenticationError):
                await auth_service.login("nobody@b.com", PASSWORD)
        assert verify.call_count == 1

    async def test_oauth_only_account_cannot_password_login(self, auth_service, memory_store):
        memory_store.create_user("g@b.com", full_name="G", email_verified=True)
        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await auth_service.login("g@b.com", PASSWORD)

    async def test_malformed_email_is_generic_failure(self, auth_service):
        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await auth_service.login("garbage", PASSWORD)


class TestEmailVerification:
    async def test_verify_once(self, auth_service, memory_store):
        registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        user = await auth_service.verify_email(registration.verification_token)
        assert user.email_verified is True
        assert memory_store.get_user(user.id).email_verified is True
        with pytest.raises(InvalidSingleUseToken, match="Invalid or expired token"):
            await auth_service.verify_email(registration.verification_token)

    async def test_expired_token(self, auth_service, memory_store):
        registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        key = (EMAIL_VERIFICATION, registration.verification_token)
        memory_store.tokens[key].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidSingleUseToken):
            await auth_service.verify_email(registration.verification_token)

    async def test_unknown_token(self, auth_service):
        with pytest.raises(InvalidSingleUseToken):
            await auth_service.verify_email("x" * 32)

    async def test_resend_replaces_older_token(self, auth_service, memory_store):
        registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        fresh = await auth_service.resend_verification(registration.user.id)
        assert fresh != registration.verification_token
        assert memory_store.get_single_use_token(EMAIL_VERIFICATION, registration.verification_token) is None
        assert (await auth_service.verify_email(fresh)).email_verified

    async def test_resend_refused_when_verified(self, auth_service):
        registration = await auth_service.register("a@b.com", PASSWORD, "A B")
        await auth_service.verify_email(registration.verification_token)
        with pytest.raises(ValidationError, match="Email already verified"):
            await auth_service.resend_verification(registration.user.id)


class TestPasswordReset:
    async def test_reset_is_single_use(self, auth_service, session_manager, memory_store):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        issued = await session_manager.create_session(user, Response())
        token = await auth_service.request_password_reset("a@b.com")
        assert token and await auth_service.is_reset_token_valid(token)

        await auth_service.reset_password_with_token(token, "Newpass1!")
        assert memory_store.list_user_sessions(user.id) == []
        assert await session_manager.refresh({REFRESH_TOKEN_COOKIE: issued.refresh_token}, Response()) is None
        assert (await auth_service.login("a@b.com", "Newpass1!")).id == user.id

        with pytest.raises(InvalidSingleUseToken, match="Invalid or expired token"):
            await auth_service.reset_password_with_token(token, "Another1!")
        assert await auth_service.is_reset_token_valid(token) is False

    async def test_unknown_email_returns_nothing(self, auth_service):
        assert await auth_service.request_password_reset("nobody@b.com") is None

    async def test_oauth_only_account_gets_no_token(self, auth_service, memory_store):
        memory_store.create_user("g@b.com", full_name="G")
        assert await auth_service.request_password_reset("g@b.com") is None

    async def test_new_request_replaces_old_token(self, auth_service):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        first = await auth_service.request_password_reset("a@b.com")
        second = await auth_service.request_password_reset("a@b.com")
        assert await auth_service.is_reset_token_valid(first) is False
        assert await auth_service.is_reset_token_valid(second) is True

    async def test_store_errors_are_swallowed(self, auth_service, memory_store):
        with patch.object(memory_store, "get_user_by_email", side_effect=RuntimeError("db down")):
            assert await auth_service.request_password_reset("a@b.com") is None

    async def test_weak_password_checked_before_token_use(self, auth_service):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        token = await auth_service.request_password_reset("a@b.com")
        with pytest.raises(ValidationError, match="at least 8 characters"):
            await auth_service.reset_password_with_token(token, "Ab1!")
        assert await auth_service.is_reset_token_valid(token)

    async def test_reset_token_expires_after_an_hour(self, auth_service, memory_store):
        await auth_service.register("a@b.com", PASSWORD, "A B")
        token = await auth_service.request_password_reset("a@b.com")
        record = memory_store.tokens[(PASSWORD_RESET, token)]
        assert timedelta(minutes=59) < record.expires_at - utcnow() <= timedelta(hours=1)


class TestChangePassword:
    async def test_revokes_all_sessions(self, auth_service, session_manager, memory_store):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        await session_manager.create_session(user, Response())
        await session_manager.create_session(user, Response())
        await auth_service.change_password(user.id, PASSWORD, "Changed1!")
        assert memory_store.list_user_sessions(user.id) == []
        assert (await auth_service.login("a@b.com", "Changed1!")).id == user.id

    async def test_store_failure_leaves_password_and_sessions_untouched(
        self, auth_service, session_manager, memory_store
    ):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        await session_manager.create_session(user, Response())
        with patch.object(
            memory_store, "replace_password", side_effect=StoreUnavailable("database unavailable")
        ), patch.object(memory_store, "update_user", wraps=memory_store.update_user) as update:
            with pytest.raises(StoreUnavailable):
                await auth_service.change_password(user.id, PASSWORD, "Changed1!")
        update.assert_not_called()
        assert len(memory_store.list_user_sessions(user.id)) == 1
        assert (await auth_service.login("a@b.com", PASSWORD)).id == user.id

    async def test_clears_cookies_on_the_response(self, auth_service):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        response = Response()
        await auth_service.change_password(user.id, PASSWORD, "Changed1!", response)
        cleared = [v.decode() for k, v in response.raw_headers if k == b"set-cookie"]
        assert any(c.startswith(f"{REFRESH_TOKEN_COOKIE}=") and "Max-Age=0" in c for c in cleared)

    async def test_wrong_current_password(self, auth_service):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        with pytest.raises(AuthenticationError, match="Current password is incorrect"):
            await auth_service.change_password(user.id, "Wrong-pass1", "Changed1!")

    async def test_new_password_must_be_strong(self, auth_service):
        user = (await auth_service.register("a@b.com", PASSWORD, "A B")).user
        with pytest.raises(ValidationError, match="special character"):
            await auth_service.change_password(user.id, PASSWORD, "Changed12")


class TestSingleUseTokens:
    async def test_purge_expired(self, single_use, memory_store):
        user = memory_store.create_user("a@b.com", full_name="A B")
        memory_store.create_single_use_token(EMAIL_VERIFICATION, user.id, "old", utcnow() - timedelta(seconds=1))
        live = await single_use.issue(PASSWORD_RESET, user.id)
        assert await single_use.purge_expired() == 1
        assert await single_use.is_valid(PASSWORD_RESET, live)

    async def test_issue_without_replace_keeps_existing(self, single_use, memory_store):
        user = memory_store.create_user("a@b.com", full_name="A B")
        first = await single_use.issue(EMAIL_VERIFICATION, user.id)
        second = await single_use.issue(EMAIL_VERIFICATION, user.id)
        assert await single_use.is_valid(EMAIL_VERIFICATION, first)
        assert await single_use.is_valid(EMAIL_VERIFICATION, second)

    async def test_kinds_do_not_cross(self, single_use, memory_store):
        user = memory_store.create_user("a@b.com", full_name="A B")
        token = await single_use.issue_email_verification(user.id)
        with pytest.raises(InvalidSingleUseToken):
            await single_use.consume(PASSWORD_RESET, token)
        assert (await single_use.consume(EMAIL_VERIFICATION, token)).user_id == user.id

    async def test_empty_token_is_invalid(self, single_use):
        assert await single_use.is_valid(EMAIL_VERIFICATION, "") is False
        with pytest.raises(InvalidSingleUseToken):
            await single_use.consume(EMAIL_VERIFICATION, "")
