from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from archauth.service.rate_limit import RateLimitResult, normalize_window


class RedisCache:
    """Redis-backed rate-limit counters and OAuth state, shared across processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: first hit in a window sets the expiry, later hits only count.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])
local cost = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local current = tonumber(redis.call('GET', key) or '0')
if current + cost > limit then
  local ttl = redis.call('PTTL', key)
  return {0, current, ttl}
end

current = redis.call('INCRBY', key, cost)
if current == cost then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
return {1, current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _rate_key(key: str) -> str:
        # Hash so user-controlled fragments (emails, IPs) cannot collide via delimiters.
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def hit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, 0)
        window_seconds = normalize_window(key, window_seconds)
        allowed, count, ttl_ms = await self._fixed_window(
            keys=[self._rate_key(key)],
            args=[window_seconds * 1000, max(1, cost), limit],
        )
        reset = math.ceil(int(ttl_ms) / 1000) if int(ttl_ms) > 0 else 0
        return RateLimitResult(bool(int(allowed)), max(0, limit - int(count)), reset)

    async def peek(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, 0)
        safe_key = self._rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.pttl(safe_key)
        raw_count, ttl_ms = await pipe.execute()
        count = int(raw_count or 0)
        reset = math.ceil(int(ttl_ms) / 1000) if ttl_ms and int(ttl_ms) > 0 else 0
        return RateLimitResult(count < limit, max(0, limit - count), reset)

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime, redirect_to: Optional[str] = None
    ) -> None:
        payload = {
            "provider": provider,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
            "redirect_to": redirect_to,
        }
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        """Atomically read and delete OAuth state so a callback cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    async def close(self) -> None:
        await self.client.aclose()
