from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol, Tuple

from archauth.logging import get_logger

logger = get_logger(__name__)

GENERATION_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter(Protocol):
    """Fixed-window counter store.

    Implementations are injected into the runtime; handlers never reach for a
    module-level counter map.
    """

    async def hit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitResult: ...

    async def peek(self, key: str, limit: int, window_seconds: int) -> RateLimitResult: ...


def normalize_window(key: str, window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        return 60
    return window_seconds


class MemoryRateLimiter:
    """Single-process fixed-window limiter with TTL eviction.

    Counts are lost on restart. Windows that have closed are dropped during a
    periodic sweep so the key map stays bounded by the number of active keys.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int, int]] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._windows)

    def _evict_expired(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        expired = [
            key for key, (start, _count, window) in self._windows.items()
            if now >= start + window
        ]
        for key in expired:
            self._windows.pop(key, None)
        self._last_sweep = now

    def _current(self, key: str, window_seconds: int, now: float) -> Tuple[float, int]:
        start, count, window = self._windows.get(key, (now, 0, window_seconds))
        if now >= start + window:
            return now, 0
        return start, count

    async def hit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, 0)
        window_seconds = normalize_window(key, window_seconds)
        cost = max(1, cost)
        async with self._lock:
            now = self._clock()
            self._evict_expired(now)
            start, count = self._current(key, window_seconds, now)
            reset = max(0, math.ceil(start + window_seconds - now))
            if count + cost > limit:
                self._windows[key] = (start, count, window_seconds)
                return RateLimitResult(False, max(0, limit - count), reset)
            count += cost
            self._windows[key] = (start, count, window_seconds)
            return RateLimitResult(True, limit - count, reset)

    async def peek(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, 0)
        window_seconds = normalize_window(key, window_seconds)
        async with self._lock:
            now = self._clock()
            start, count = self._current(key, window_seconds, now)
            reset = max(0, math.ceil(start + window_seconds - now)) if count else 0
            return RateLimitResult(count < limit, max(0, limit - count), reset)


class GenerationQuota:
    """Per-user design generation allowance over a fixed hourly window."""

    def __init__(self, limiter: RateLimiter, limit_per_hour: int) -> None:
        self.limiter = limiter
        self.limit_per_hour = limit_per_hour

    @staticmethod
    def _key(user_id: str) -> str:
        return f"generation:{user_id}"

    async def consume(self, user_id: str) -> RateLimitResult:
        result = await self.limiter.hit(
            self._key(user_id), self.limit_per_hour, GENERATION_WINDOW_SECONDS
        )
        if not result.allowed:
            logger.info("generation_quota_exhausted", user_id=user_id, reset_seconds=result.reset_seconds)
        return result

    async def status(self, user_id: str) -> RateLimitResult:
        return await self.limiter.peek(
            self._key(user_id), self.limit_per_hour, GENERATION_WINDOW_SECONDS
        )
