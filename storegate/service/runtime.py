from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from storegate.config import get_settings, reset_settings_cache
from storegate.logging import configure_logging, get_logger
from storegate.service.auth import (
    AuthStore,
    AuthStrategy,
    CredentialsStrategy,
    OAuthStrategy,
    build_strategies,
)
from storegate.service.passwords import CredentialHasher
from storegate.service.rate_limit import (
    FixedWindowRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from storegate.service.sessions import (
    SessionEvents,
    SessionIssuer,
    VerificationTokens,
    log_session_event,
)
from storegate.storage.memory import MemoryStore
from storegate.storage.postgres import PostgresStore
from storegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: postgresql://app:secret@db:5432/shop -> postgresql://app:***@db:5432/shop
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        configure_logging(self.settings.log_level.value)
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            session_strategy=self.settings.session_strategy.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: AuthStore = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    connect_timeout=self.settings.db_connect_timeout_seconds,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = CredentialHasher()
        self.strategies: Dict[str, AuthStrategy] = build_strategies(
            self.settings, self.store, self.hasher
        )
        self.events = SessionEvents()
        self.events.subscribe(log_session_event)
        self.issuer = SessionIssuer(self.settings, self.store, self.events)
        self.verification = VerificationTokens(self.settings, self.store)

        self.cache: Optional[RedisCache] = None
        self.rate_limiter: RateLimiter
        if self.settings.rate_limit_redis_url:
            cache = RedisCache(self.settings.rate_limit_redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                # counters stay per-process until the next restart
                logger.warning(
                    "rate_limit_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.rate_limit_redis_url),
                    error=str(exc),
                )
        if self.cache is not None:
            self.rate_limiter = RedisRateLimiter(
                self.cache, self.settings.rate_limit_max, self.settings.rate_limit_window_ms
            )
        else:
            self.rate_limiter = FixedWindowRateLimiter(
                self.settings.rate_limit_max, self.settings.rate_limit_window_ms
            )

        logger.info(
            "runtime_initialized",
            strategies=sorted(self.strategies),
            rate_limit_backend="redis" if self.cache else "memory",
            redis_url=_mask_url_password(self.settings.rate_limit_redis_url),
            rate_limit_max=self.settings.rate_limit_max,
            rate_limit_window_ms=self.settings.rate_limit_window_ms,
        )

    @property
    def credentials(self) -> CredentialsStrategy:
        strategy = self.strategies.get(CredentialsStrategy.name)
        if not isinstance(strategy, CredentialsStrategy):
            raise RuntimeError("credentials strategy is not configured")
        return strategy

    def oauth(self, provider: str) -> Optional[OAuthStrategy]:
        strategy = self.strategies.get(provider)
        return strategy if isinstance(strategy, OAuthStrategy) else None

    def sweep_expired(self) -> Dict[str, int]:
        """Remove expired sessions, tokens, OAuth states and rate-limit buckets."""
        counts = {
            "sessions": self.store.delete_expired_sessions(),
            "verification_tokens": self.store.delete_expired_verification_tokens(),
            "revoked_jwts": self.issuer.cleanup_revoked(),
            "rate_limit_buckets": self.rate_limiter.sweep(),
            "oauth_states": 0,
        }
        for strategy in self.strategies.values():
            if isinstance(strategy, OAuthStrategy):
                counts["oauth_states"] += strategy.cleanup_expired_states()
        return counts

    async def close(self) -> None:
        await self.events.drain()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
# Thread-safe singleton
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.is_test:
            raise RuntimeError("runtime reset is only allowed when APP_ENV=test")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
