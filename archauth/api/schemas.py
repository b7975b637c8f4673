from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from archauth.logging import get_correlation_id
from archauth.service.auth import normalize_email

# Upper bound on any password field; the strength rules enforce the real limit.
MAX_PASSWORD_FIELD_LENGTH = 1024
MAX_TOKEN_FIELD_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "oauth_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelRequest(BaseModel):
    # Accept both the browser client's camelCase keys and snake_case.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_CamelRequest):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    full_name: str = Field(..., alias="fullName", max_length=200)


class LoginRequest(_CamelRequest):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class ForgotPasswordRequest(_CamelRequest):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)


class ResetPasswordRequest(_CamelRequest):
    token: str = Field(..., max_length=MAX_TOKEN_FIELD_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class VerifyEmailRequest(_CamelRequest):
    token: str = Field(..., max_length=MAX_TOKEN_FIELD_LENGTH)


class ChangePasswordRequest(_CamelRequest):
    current_password: str = Field(
        ..., alias="currentPassword", max_length=MAX_PASSWORD_FIELD_LENGTH
    )
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_FIELD_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    email_verified: bool = False
    role: str = "user"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: Optional[str] = None
    verification_token: Optional[str] = None


class SessionResponse(BaseModel):
    authenticated: bool
    source: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    avatar_url: Optional[str] = None


class QuotaResponse(BaseModel):
    limit: int
    remaining: int
    reset_seconds: int
    window_seconds: int
