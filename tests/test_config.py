import pytest

from storegate.config import (
    ConfigurationError,
    Environment,
    LogLevel,
    SessionStrategy,
    Settings,
)
from storegate.logging import _mask_sensitive, normalize_log_level

REQUIRED = {
    "DATABASE_URL": "postgresql://app:secret@db:5432/shop",
    "SESSION_SECRET": "s" * 32,
    "JWT_SECRET": "j" * 32,
    "APP_BASE_URL": "https://admin.example.com/",
}


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in list(REQUIRED) + [
        "APP_ENV",
        "ALLOWED_ORIGINS",
        "LOG_LEVEL",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "RATE_LIMIT_MAX",
        "RATE_LIMIT_WINDOW_MS",
        "SESSION_STRATEGY",
    ]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _set_required(monkeypatch, **overrides):
    for name, value in {**REQUIRED, **overrides}.items():
        monkeypatch.setenv(name, value)


def test_defaults(clean_env):
    _set_required(clean_env)
    settings = Settings.from_env()
    assert settings.app_env == Environment.DEVELOPMENT
    assert settings.app_base_url == "https://admin.example.com"
    assert settings.allowed_origins == ["http://localhost:3000"]
    assert settings.rate_limit_max == 100
    assert settings.rate_limit_window_ms == 900_000
    assert settings.log_level == LogLevel.INFO
    assert settings.session_strategy == SessionStrategy.JWT
    assert not settings.google_enabled
    assert not settings.is_production


def test_missing_required_variables_are_all_named(clean_env):
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env()
    assert set(exc.value.variables) == set(REQUIRED)
    assert "Missing or invalid environment variables" in str(exc.value)


def test_short_secret_is_rejected(clean_env):
    _set_required(clean_env, JWT_SECRET="too-short")
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env()
    assert exc.value.variables == ["JWT_SECRET"]


def test_base_url_must_be_absolute(clean_env):
    _set_required(clean_env, APP_BASE_URL="admin.example.com")
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env()
    assert exc.value.variables == ["APP_BASE_URL"]


def test_invalid_enum_values_are_rejected(clean_env):
    _set_required(clean_env, APP_ENV="staging", LOG_LEVEL="verbose")
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env()
    assert set(exc.value.variables) == {"APP_ENV", "LOG_LEVEL"}


def test_origins_and_overrides(clean_env):
    _set_required(
        clean_env,
        APP_ENV="PRODUCTION",
        ALLOWED_ORIGINS="https://admin.example.com, https://shop.example.com/",
        RATE_LIMIT_MAX="5",
        LOG_LEVEL="WARN",
        SESSION_STRATEGY="database",
    )
    settings = Settings.from_env()
    assert settings.is_production
    assert settings.allowed_origins == ["https://admin.example.com", "https://shop.example.com"]
    assert settings.rate_limit_max == 5
    assert settings.log_level == LogLevel.WARN
    assert settings.session_strategy == SessionStrategy.DATABASE


def test_google_requires_both_credentials(clean_env):
    _set_required(clean_env, GOOGLE_CLIENT_ID="id", GOOGLE_CLIENT_SECRET="  ")
    assert not Settings.from_env().google_enabled
    clean_env.setenv("GOOGLE_CLIENT_SECRET", "secret")
    assert Settings.from_env().google_enabled


def test_dotenv_file_is_read_and_os_environment_wins(clean_env, tmp_path):
    (tmp_path / ".env").write_text(
        "\n".join(f"{k}={v}" for k, v in REQUIRED.items()) + "\nRATE_LIMIT_MAX=7\n"
    )
    settings = Settings.from_env()
    assert settings.rate_limit_max == 7
    clean_env.setenv("RATE_LIMIT_MAX", "9")
    assert Settings.from_env().rate_limit_max == 9


def test_rate_limit_values_must_be_positive(clean_env):
    _set_required(clean_env, RATE_LIMIT_WINDOW_MS="0")
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env()
    assert exc.value.variables == ["RATE_LIMIT_WINDOW_MS"]


def test_normalize_log_level():
    assert normalize_log_level("warn") == "WARNING"
    assert normalize_log_level("ERROR") == "ERROR"
    assert normalize_log_level("debug") == "DEBUG"


def test_log_processor_masks_credentials():
    event = _mask_sensitive(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2hunter2",
            "session_token": "abc123def456",
            "email": "owner@shop.example",
            "path": "/api/auth/login",
        },
    )
    assert event["password"] == "***"
    assert event["session_token"] == "***"
    assert event["email"] == "ow***le"
    assert event["path"] == "/api/auth/login"
