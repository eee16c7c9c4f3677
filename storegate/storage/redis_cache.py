from __future__ import annotations

import hashlib

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for counters shared between processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Ping Redis once at startup; raises ``RedisError`` when unreachable.

        Uses a throwaway synchronous client. The async client is only ever
        used from the serving loop.
        """
        from redis import Redis

        sync_client = Redis.from_url(self.redis_url, socket_connect_timeout=self.socket_timeout)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash client identities so header-supplied values cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:fw:{digest}"

    async def incr_window(self, client_key: str, window_index: int, window_ms: int) -> int:
        """Atomically count one hit in a fixed window and return the new total.

        The key lives for two windows so the counter of the current window
        never disappears while it is still being read.
        """
        key = self._normalize_rate_key(f"{client_key}:{window_index}")
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.pexpire(key, window_ms * 2)
        count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
