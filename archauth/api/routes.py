from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from archauth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    QuotaResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
    VerifyEmailRequest,
)
from archauth.logging import get_logger
from archauth.service.errors import NotFoundError, TokenError
from archauth.service.oauth import OAUTH_SESSION_COOKIE, OAUTH_STATE_TTL, new_oauth_state
from archauth.service.rate_limit import GENERATION_WINDOW_SECONDS
from archauth.service.resolver import AuthOutcome, Identity, OAuthIdentity
from archauth.service.runtime import Runtime, get_runtime
from archauth.service.sessions import run_store_call
from archauth.storage.models import User, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client and request.client.host else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Count one hit against ``key`` and raise 429 once the window is spent."""
    result = await runtime.rate_limiter.hit(key, limit, window_seconds)
    if response is not None and limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, result.remaining))
        response.headers["X-RateLimit-Reset"] = str(result.reset_seconds)
    if not result.allowed:
        logger.info("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        exc = _http_error("rate_limited", "Too many requests, please try again later", 429)
        exc.headers = {"Retry-After": str(max(1, result.reset_seconds))}
        raise exc


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.to_public_dict())


async def get_identity(request: Request) -> AuthOutcome:
    return await get_runtime().resolver.resolve(request)


async def require_identity(identity: AuthOutcome = Depends(get_identity)) -> Identity:
    if not identity.authenticated:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    return identity


async def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if identity.role != "admin":
        raise _http_error("forbidden", "Admin access required", status_code=403)
    return identity


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account and sign it in.

    Raises:
        400: invalid email, weak password or missing name
        409: email already registered
        429: too many attempts from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    registration = await runtime.auth.register(body.email, body.password, body.full_name)
    issued = await runtime.sessions.create_session(registration.user, response)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(registration.user),
            session_id=issued.session_id,
            verification_token=(
                registration.verification_token if runtime.settings.test_mode else None
            ),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check email and password and set the access/refresh cookie pair.

    Raises:
        401: credentials rejected (same answer for unknown email and bad password)
        429: too many attempts from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.login(body.email, body.password)
    issued = await runtime.sessions.create_session(user, response)
    return Envelope(
        status="ok", data=AuthResponse(user=_user_response(user), session_id=issued.session_id)
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    runtime = get_runtime()
    refreshed = await runtime.sessions.refresh(request.cookies, response)
    if refreshed is None:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    return Envelope(
        status="ok",
        data=AuthResponse(user=_user_response(refreshed.user), session_id=refreshed.session_id),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    deleted = await runtime.sessions.logout(request.cookies, response)
    if request.cookies.get(OAUTH_SESSION_COOKIE):
        logger.info("oauth_session_cleared")
    runtime.oauth.clear_cookie(response)
    return Envelope(status="ok", data={"logged_out": True, "session_deleted": deleted})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, identity: Identity = Depends(require_identity)):
    runtime = get_runtime()
    removed = await runtime.sessions.logout_all_sessions(identity.user_id, response)
    runtime.oauth.clear_cookie(response)
    return Envelope(status="ok", data={"sessions_revoked": removed})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Start a password reset.

    The answer is the same whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_hour,
        3600,
    )
    token = await runtime.auth.request_password_reset(body.email)
    data: dict[str, object] = {
        "message": "If an account exists for that email, a reset link has been sent."
    }
    if runtime.settings.test_mode and token:
        data["reset_token"] = token
    return Envelope(status="ok", data=data)


@router.get("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def check_reset_token(token: str = Query("", max_length=256)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"valid": await runtime.auth.is_reset_token_valid(token)})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    user = await runtime.auth.reset_password_with_token(body.token, body.password)
    return Envelope(status="ok", data={"reset": True, "user_id": user.id})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"user": _user_response(user)})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(identity: Identity = Depends(require_identity)):
    runtime = get_runtime()
    token = await runtime.auth.resend_verification(identity.user_id)
    data: dict[str, object] = {"sent": True}
    if runtime.settings.test_mode:
        data["verification_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    identity: Identity = Depends(require_identity),
):
    """Replace the password, revoke every session and sign this client back in."""
    runtime = get_runtime()
    user = await runtime.auth.change_password(
        identity.user_id, body.current_password, body.new_password
    )
    runtime.oauth.clear_cookie(response)
    issued = await runtime.sessions.create_session(user, response)
    return Envelope(
        status="ok", data=AuthResponse(user=_user_response(user), session_id=issued.session_id)
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def read_session(request: Request, identity: AuthOutcome = Depends(get_identity)):
    if not identity.authenticated:
        return Envelope(
            status="ok", data=SessionResponse(authenticated=False, source=identity.source)
        )
    avatar_url = None
    email, role = identity.email, identity.role
    if isinstance(identity, OAuthIdentity):
        avatar_url = identity.avatar_ref
        token = request.cookies.get(OAUTH_SESSION_COOKIE)
        try:
            claims = await get_runtime().oauth.read_session(token or "")
        except TokenError as exc:
            logger.debug("oauth_session_reread_failed", reason=exc.reason)
        else:
            avatar_url, email, role = claims.avatar_ref, claims.email, claims.role
    return Envelope(
        status="ok",
        data=SessionResponse(
            authenticated=True,
            source=identity.source,
            user_id=identity.user_id,
            email=email,
            role=role,
            avatar_url=avatar_url,
        ),
    )


@router.get("/auth/oauth/google/start", tags=["auth"])
async def oauth_google_start(request: Request):
    runtime = get_runtime()
    if runtime.google is None:
        raise _http_error("not_found", "Google sign-in is not configured", status_code=404)
    await _enforce_rate_limit(
        runtime,
        f"oauth_start:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    state = new_oauth_state()
    await runtime.oauth_states.set_oauth_state(
        state, runtime.google.provider, utcnow() + OAUTH_STATE_TTL
    )
    return RedirectResponse(runtime.google.authorization_url(state), status_code=302)


@router.get("/auth/oauth/google/callback", response_model=Envelope, tags=["auth"])
async def oauth_google_callback(
    response: Response,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    if runtime.google is None:
        raise _http_error("not_found", "Google sign-in is not configured", status_code=404)
    if error or not code or not state:
        logger.warning("oauth_callback_rejected", provider_error=error, has_code=bool(code))
        raise _http_error("oauth_failed", "OAuth sign-in failed", status_code=401)
    stored = await runtime.oauth_states.pop_oauth_state(state)
    if not stored or stored.get("provider") != runtime.google.provider:
        logger.warning("oauth_state_invalid")
        raise _http_error("oauth_failed", "OAuth sign-in failed", status_code=401)
    profile = await runtime.google.exchange_code(code)
    if profile is None:
        raise _http_error("oauth_failed", "OAuth sign-in failed", status_code=401)
    user, token = await runtime.oauth.complete_sign_in(profile)
    runtime.oauth.set_cookie(response, token)
    logger.info("oauth_sign_in_completed", user_id=user.id, provider=profile.provider)
    return Envelope(status="ok", data=AuthResponse(user=_user_response(user)))


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(identity: Identity = Depends(require_identity)):
    runtime = get_runtime()
    user = await run_store_call(
        runtime.store.get_user, identity.user_id, timeout=runtime.settings.store_timeout_seconds
    )
    if user is None:
        raise NotFoundError("User not found")
    return Envelope(status="ok", data=_user_response(user))


@router.get("/user/quota", response_model=Envelope, tags=["user"])
async def get_quota(identity: Identity = Depends(require_identity)):
    runtime = get_runtime()
    status = await runtime.generation_quota.status(identity.user_id)
    return Envelope(
        status="ok",
        data=QuotaResponse(
            limit=runtime.generation_quota.limit_per_hour,
            remaining=status.remaining,
            reset_seconds=status.reset_seconds,
            window_seconds=GENERATION_WINDOW_SECONDS,
        ),
    )


@router.post("/admin/users/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(user_id: str, identity: Identity = Depends(require_admin)):
    """Delete every session of another user, e.g. after a reported compromise."""
    runtime = get_runtime()
    removed = await runtime.sessions.logout_all_sessions(user_id)
    logger.info("admin_sessions_revoked", admin_id=identity.user_id, user_id=user_id)
    return Envelope(status="ok", data={"sessions_revoked": removed})
