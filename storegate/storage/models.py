from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


# Logical user field -> storage column. Updates outside this table are rejected.
USER_COLUMNS: Dict[str, str] = {
    "name": "name",
    "password": "password",
    "role": "role",
}


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    password: Optional[str] = None
    role: Role = Role.USER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password)


@dataclass
class Account:
    """Link between a local user and an external identity provider account."""

    user_id: str
    provider: str
    provider_account_id: str
    type: str = "oauth"
    id: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None
    session_state: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    session_token: str
    user_id: str
    expires: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        *,
        expires: datetime | None = None,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        session_token: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id,
            session_token=session_token or new_session_token(),
            user_id=user_id,
            expires=expires or now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires <= (now or utcnow())


@dataclass
class VerificationToken:
    identifier: str
    token: str
    expires: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires <= (now or utcnow())


__all__ = [
    "Account",
    "Role",
    "Session",
    "USER_COLUMNS",
    "User",
    "VerificationToken",
    "new_session_token",
    "utcnow",
]
