from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from storegate.logging import get_logger
from storegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_ms),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


@dataclass
class _Bucket:
    count: int
    reset_at_ms: int


class RateLimiter(Protocol):
    max_requests: int
    window_ms: int

    async def hit(self, client_id: str) -> RateLimitDecision: ...

    def sweep(self) -> int: ...


class FixedWindowRateLimiter:
    """Per-client fixed-window counter kept in process memory.

    Buckets are keyed ``client:floor(now / window)``. The read-modify-write
    of a bucket happens under one lock, so concurrent requests from the same
    client can never both take the last slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _prune(self, now_ms: int) -> int:
        cutoff = now_ms - self.window_ms
        stale = [key for key, bucket in self._buckets.items() if bucket.reset_at_ms < cutoff]
        for key in stale:
            self._buckets.pop(key, None)
        return len(stale)

    def sweep(self) -> int:
        with self._lock:
            return self._prune(self._now_ms())

    def check(self, client_id: str) -> RateLimitDecision:
        now_ms = self._now_ms()
        window_index = now_ms // self.window_ms
        key = f"{client_id}:{window_index}"
        with self._lock:
            self._prune(now_ms)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(count=0, reset_at_ms=(window_index + 1) * self.window_ms)
                self._buckets[key] = bucket
            if bucket.count >= self.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at_ms=bucket.reset_at_ms,
                    retry_after_seconds=max(1, math.ceil((bucket.reset_at_ms - now_ms) / 1000)),
                )
            bucket.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - bucket.count,
                reset_at_ms=bucket.reset_at_ms,
            )

    async def hit(self, client_id: str) -> RateLimitDecision:
        return self.check(client_id)

    def __len__(self) -> int:
        return len(self._buckets)


class RedisRateLimiter:
    """Fixed-window limiter whose counters live in Redis and are shared by every process."""

    def __init__(
        self,
        cache: RedisCache,
        max_requests: int,
        window_ms: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock

    async def hit(self, client_id: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        window_index = now_ms // self.window_ms
        reset_at_ms = (window_index + 1) * self.window_ms
        count = await self.cache.incr_window(client_id, window_index, self.window_ms)
        if count > self.max_requests:
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at_ms=reset_at_ms,
                retry_after_seconds=max(1, math.ceil((reset_at_ms - now_ms) / 1000)),
            )
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_at_ms=reset_at_ms,
        )

    def sweep(self) -> int:
        # Redis expires window keys on its own
        return 0


def client_identity(
    forwarded_for: Optional[str], peer_host: Optional[str]
) -> str:
    """First X-Forwarded-For hop, else the peer address, else ``anonymous``.

    Header values are client-controlled, so this key is advisory only.
    """
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if peer_host:
        return peer_host
    return "anonymous"


__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "RedisRateLimiter",
    "client_identity",
]
