from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from archauth.config import get_settings, reset_settings_cache
from archauth.logging import get_logger
from archauth.service.auth import AuthService
from archauth.service.oauth import (
    GoogleOAuthClient,
    MemoryOAuthStateStore,
    OAuthSessionAdapter,
    OAuthStateStore,
)
from archauth.service.passwords import PasswordUtility
from archauth.service.rate_limit import GenerationQuota, MemoryRateLimiter, RateLimiter
from archauth.service.resolver import (
    AuthResolver,
    CookieAccessTokenProvider,
    OAuthSessionProvider,
    TrustedHeaderProvider,
)
from archauth.service.sessions import CookiePolicy, CookieSessionManager
from archauth.service.single_use import SingleUseTokenService
from archauth.service.tokens import TokenCodec
from archauth.storage.memory import MemoryStore
from archauth.storage.postgres import PostgresStore
from archauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton service graph for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=settings.data_root)
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    statement_timeout_seconds=settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                    message="Running without Redis; rate limits and OAuth state are in-memory only.",
                )

        self.rate_limiter: RateLimiter = self.cache or MemoryRateLimiter()
        self.oauth_states: OAuthStateStore = self.cache or MemoryOAuthStateStore()

        timeout = settings.store_timeout_seconds
        self.passwords = PasswordUtility(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
        )
        self.codec = TokenCodec.from_settings(settings)
        self.cookies = CookiePolicy(
            secure=settings.secure_cookies, domain=settings.cookie_domain
        )
        self.sessions = CookieSessionManager(
            self.store, self.codec, self.cookies, store_timeout=timeout
        )
        self.oauth = OAuthSessionAdapter(
            self.store,
            settings.oauth_session_secret,
            cookies=self.cookies,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.oauth_session_ttl_minutes),
            leeway_seconds=settings.jwt_clock_skew_leeway_seconds,
            store_timeout=timeout,
        )
        self.single_use = SingleUseTokenService(
            self.store,
            verification_ttl=timedelta(hours=settings.verification_token_ttl_hours),
            reset_ttl=timedelta(hours=settings.password_reset_token_ttl_hours),
            store_timeout=timeout,
        )
        self.auth = AuthService(
            self.store,
            self.passwords,
            self.single_use,
            self.sessions,
            store_timeout=timeout,
        )
        self.generation_quota = GenerationQuota(
            self.rate_limiter, settings.generation_limit_per_hour
        )
        self.resolver = AuthResolver(
            [
                OAuthSessionProvider(self.oauth),
                CookieAccessTokenProvider(self.codec),
                TrustedHeaderProvider(
                    enabled=settings.trust_user_header,
                    trusted_networks=settings.trusted_networks,
                ),
            ]
        )

        self.google: Optional[GoogleOAuthClient] = None
        if settings.google_client_id and settings.google_client_secret:
            redirect_uri = settings.oauth_redirect_uri or (
                f"{settings.app_base_url.rstrip('/')}/api/auth/oauth/google/callback"
            )
            self.google = GoogleOAuthClient(
                settings.google_client_id, settings.google_client_secret, redirect_uri
            )
        if settings.trust_user_header:
            logger.warning(
                "trust_header_enabled", trusted_proxy_cidrs=settings.trusted_proxy_cidrs
            )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            redis=self.cache is not None,
            google_oauth=self.google is not None,
        )

    async def sweep_expired(self) -> dict:
        """Delete expired sessions and single-use tokens."""
        sessions = await self.sessions.purge_expired()
        tokens = await self.single_use.purge_expired()
        logger.info("expired_records_swept", sessions=sessions, single_use_tokens=tokens)
        return {"sessions": sessions, "single_use_tokens": tokens}

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.debug("runtime_cache_close_skipped", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
