from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from storegate import app as app_module
from storegate.config import reset_settings_cache
from redis.exceptions import ConnectionError as RedisConnectionError

from storegate.service.rate_limit import FixedWindowRateLimiter, RedisRateLimiter
from storegate.service.runtime import (
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from storegate.storage.memory import MemoryStore
from storegate.storage.models import utcnow
from storegate.storage.redis_cache import RedisCache


def test_runtime_defaults_for_tests():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.rate_limiter, FixedWindowRateLimiter)
    assert runtime.cache is None
    assert set(runtime.strategies) == {"credentials"}
    assert runtime.oauth("google") is None
    assert get_runtime() is runtime


def test_reset_is_refused_outside_test_env(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()
    monkeypatch.setenv("APP_ENV", "test")
    reset_settings_cache()


def test_sweep_removes_expired_records():
    runtime = get_runtime()
    user = runtime.store.create_user("sweep@example.com", "Sweep")
    runtime.store.create_session(user.id, utcnow() - timedelta(minutes=1))
    runtime.store.create_session(user.id, utcnow() + timedelta(minutes=1))
    runtime.store.create_verification_token("sweep@example.com", "t", utcnow() - timedelta(minutes=1))
    counts = runtime.sweep_expired()
    assert counts["sessions"] == 1
    assert counts["verification_tokens"] == 1
    assert counts["oauth_states"] == 0


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:secret@db:5432/shop")
        == "postgresql://app:***@db:5432/shop"
    )
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert _mask_url_password(None) is None


def test_lifespan_starts_and_stops_cleanly():
    with TestClient(app_module.app) as client:
        assert client.get("/api/health").status_code == 200
        assert app_module._sweep_task is not None
    assert app_module._sweep_task.done()


def test_shared_rate_limit_counters_when_redis_answers(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setattr(RedisCache, "verify_connection", lambda self: None)
    runtime = reset_runtime_for_tests()
    assert isinstance(runtime.cache, RedisCache)
    assert isinstance(runtime.rate_limiter, RedisRateLimiter)


def test_unreachable_redis_falls_back_to_local_counters(monkeypatch):
    def refuse(self):
        raise RedisConnectionError("connection refused")

    monkeypatch.setenv("RATE_LIMIT_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setattr(RedisCache, "verify_connection", refuse)
    runtime = reset_runtime_for_tests()
    assert runtime.cache is None
    assert isinstance(runtime.rate_limiter, FixedWindowRateLimiter)


def test_credentials_strategy_must_be_present():
    runtime = get_runtime()
    runtime.strategies.pop("credentials")
    with pytest.raises(RuntimeError):
        runtime.credentials
