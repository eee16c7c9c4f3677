from __future__ import annotations

import os
from enum import Enum
from typing import Any, List
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from storegate.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"


class SessionStrategy(str, Enum):
    """Where session state lives.

    - JWT: self-contained signed token, no store round trip on resolve
    - DATABASE: opaque token naming a row in the sessions table
    """

    JWT = "jwt"
    DATABASE = "database"


class ConfigurationError(RuntimeError):
    """Raised when required environment values are missing or malformed."""

    def __init__(self, variables: List[str], errors: List[str] | None = None) -> None:
        self.variables = variables
        self.errors = errors or []
        super().__init__(
            "Missing or invalid environment variables: " + ", ".join(variables)
        )


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, validated once at startup."""

    app_env: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(..., "DATABASE_URL", min_length=1)
    session_secret: str = env_field(
        ...,
        "SESSION_SECRET",
        min_length=MIN_SECRET_LENGTH,
        description="Keys verification-token hashing and OAuth state",
    )
    app_base_url: str = env_field(
        ...,
        "APP_BASE_URL",
        description="Externally reachable base URL; default redirect target",
    )
    jwt_secret: str = env_field(..., "JWT_SECRET", min_length=MIN_SECRET_LENGTH)
    jwt_issuer: str = env_field("storegate", "JWT_ISSUER")
    jwt_audience: str = env_field("storegate-admin", "JWT_AUDIENCE")
    allowed_origins: List[str] = env_field(
        ["http://localhost:3000"], "ALLOWED_ORIGINS"
    )
    rate_limit_max: int = env_field(100, "RATE_LIMIT_MAX", gt=0)
    rate_limit_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_WINDOW_MS", gt=0)
    rate_limit_redis_url: str | None = env_field(
        None,
        "RATE_LIMIT_REDIS_URL",
        description="Share rate-limit counters across processes through Redis",
    )
    log_level: LogLevel = env_field(LogLevel.INFO, "LOG_LEVEL")
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS", gt=0)
    session_strategy: SessionStrategy = env_field(SessionStrategy.JWT, "SESSION_STRATEGY")
    session_max_age_seconds: int = env_field(
        7 * 24 * 60 * 60, "SESSION_MAX_AGE_SECONDS", gt=0
    )
    session_update_age_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_UPDATE_AGE_SECONDS",
        ge=0,
        description="Sessions older than this are extended on the next resolve",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(20, "DB_POOL_MAX_SIZE", gt=0)
    db_connect_timeout_seconds: float = env_field(2.0, "DB_CONNECT_TIMEOUT_SECONDS", gt=0)
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS", ge=0)
    expiry_sweep_interval_seconds: int = env_field(
        300, "EXPIRY_SWEEP_INTERVAL_SECONDS", gt=0
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        env_names: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            env_names[name] = env_name
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
        try:
            return cls(**merged)
        except ValidationError as exc:
            variables: list[str] = []
            messages: list[str] = []
            for error in exc.errors():
                field_name = str(error["loc"][0]) if error.get("loc") else "?"
                env_name = env_names.get(field_name, field_name.upper())
                if env_name not in variables:
                    variables.append(env_name)
                messages.append(f"{env_name}: {error.get('msg')}")
            logger.error("configuration_invalid", variables=variables)
            raise ConfigurationError(variables, messages) from exc

    @field_validator("app_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return value.strip().rstrip("/")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            origins = [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
            return origins or ["http://localhost:3000"]
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("app_env", "session_strategy", mode="before")
    @classmethod
    def _lower_enum(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("google_client_id", "google_client_secret", "rate_limit_redis_url")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def is_test(self) -> bool:
        return self.app_env == Environment.TEST

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
