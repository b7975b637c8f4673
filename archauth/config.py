from __future__ import annotations

import ipaddress
import os
import threading
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from archauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the auth and session service."""

    # Signing secrets. There is deliberately no default: a missing secret must
    # stop the process before any token is minted.
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    oauth_session_secret: str | None = env_field(
        None, "OAUTH_SESSION_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("architecture.lk", "JWT_ISSUER")
    jwt_audience: str = env_field("architecture.lk", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    oauth_session_ttl_minutes: int = env_field(15, "OAUTH_SESSION_TTL_MINUTES", gt=0)
    jwt_clock_skew_leeway_seconds: int = env_field(
        30,
        "JWT_CLOCK_SKEW_LEEWAY_SECONDS",
        ge=0,
        description="Tolerance applied to exp checks for clock drift between hosts",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_KIB", ge=8, description="argon2id memory cost in KiB"
    )
    verification_token_ttl_hours: int = env_field(
        24, "VERIFICATION_TOKEN_TTL_HOURS", gt=0
    )
    password_reset_token_ttl_hours: int = env_field(
        1, "PASSWORD_RESET_TOKEN_TTL_HOURS", gt=0
    )

    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie flag; derived from APP_BASE_URL when unset",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Trust header (x-user-id). Off unless explicitly enabled, and even then only
    # honoured for peers inside trusted_proxy_cidrs.
    trust_user_header: bool = env_field(False, "TRUST_USER_HEADER")
    trusted_proxy_cidrs: list[str] = env_field(
        ["127.0.0.1/32", "::1/128"], "TRUSTED_PROXY_CIDRS"
    )

    database_url: str = env_field(
        "postgresql://localhost:5432/archauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    data_root: str | None = env_field(
        None,
        "DATA_ROOT",
        description="Directory for memory store persistence; disabled when unset",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Deadline for a single store round trip made on a request path",
    )

    generation_limit_per_hour: int = env_field(10, "GENERATION_LIMIT_PER_HOUR", ge=0)
    login_rate_limit_per_minute: int = env_field(
        10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=0
    )
    reset_rate_limit_per_hour: int = env_field(5, "RESET_RATE_LIMIT_PER_HOUR", ge=0)

    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS", ge=0
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Expose single-use tokens in responses so flows can be driven without email",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", "jwt_refresh_secret", "oauth_session_secret")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        if value is None or not value.strip():
            env_name = info.field_name.upper()
            logger.error("signing_secret_missing", setting=env_name)
            raise ValueError(f"{env_name} must be set; refusing to start without it")
        return value

    @field_validator("cors_allow_origins", "trusted_proxy_cidrs", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("trusted_proxy_cidrs")
    @classmethod
    def _validate_cidrs(cls, value: list[str]) -> list[str]:
        for cidr in value:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid CIDR in TRUSTED_PROXY_CIDRS: {cidr}") from exc
        return value

    @field_validator("cookie_secure", "redis_url", "cookie_domain", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        return self

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return urlparse(self.app_base_url).scheme == "https"

    @property
    def allowed_origins(self) -> list[str]:
        return self.cors_allow_origins or [self.app_base_url.rstrip("/")]

    @property
    def trusted_networks(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [ipaddress.ip_network(cidr, strict=False) for cidr in self.trusted_proxy_cidrs]


_settings_cache: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        with _settings_lock:
            if _settings_cache is None:
                _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
