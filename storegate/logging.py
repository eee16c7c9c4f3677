"""Structured logging for the auth service.

Logs are structlog events. Every entry carries the request's correlation id
when one is bound, and credential-bearing fields never reach the output.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_LEVEL_ALIASES = {
    "error": "ERROR",
    "warn": "WARNING",
    "warning": "WARNING",
    "info": "INFO",
    "debug": "DEBUG",
}

# Values under these keys are dropped entirely
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
# Values under these keys keep their edges so entries stay correlatable
_CONTACT_KEYS = ("email",)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = _correlation_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(marker in lowered for marker in _CONTACT_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def normalize_log_level(level: Optional[str]) -> str:
    """Map LOG_LEVEL values (error, warn, info, debug) onto stdlib names."""
    if not level:
        return "INFO"
    cleaned = level.strip()
    return _LEVEL_ALIASES.get(cleaned.lower(), cleaned.upper())


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(log_level: Optional[str] = None) -> None:
    """(Re)build the structlog pipeline.

    JSON lines by default; LOG_JSON=false or LOG_DEV_MODE=true switches to the
    colored console renderer.
    """
    level = getattr(logging, normalize_log_level(log_level), logging.INFO)
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"):
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # loggers are created at import time, before settings are validated
        cache_logger_on_first_use=False,
    )


configure_logging(os.getenv("LOG_LEVEL", "info"))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["configure_logging", "get_logger", "normalize_log_level", "set_correlation_id"]
