"""Helpers shared between the memory and postgres store implementations.

Both backends must agree on email comparison, on which user fields may be
updated and on how naive timestamps are interpreted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from storegate.storage.models import USER_COLUMNS, Role


def email_key(email: str) -> str:
    """Comparison key for emails. Storage keeps the original casing."""
    return email.strip().lower()


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validated_user_updates(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return the updates keyed by storage column.

    Raises ValueError for any field outside USER_COLUMNS.
    """
    unknown = sorted(set(fields) - set(USER_COLUMNS))
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(unknown)}")
    columns: Dict[str, Any] = {}
    for name, value in fields.items():
        if name == "role" and value is not None:
            value = Role(value)
        columns[USER_COLUMNS[name]] = value
    return columns


__all__ = ["email_key", "ensure_aware", "validated_user_updates"]
