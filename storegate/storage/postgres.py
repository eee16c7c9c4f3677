from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from storegate.logging import get_logger
from storegate.storage.common import ensure_aware, validated_user_updates
from storegate.storage.errors import ConstraintViolation, StoreUnavailable
from storegate.storage.models import (
    Account,
    Role,
    Session,
    User,
    VerificationToken,
    new_session_token,
    utcnow,
)

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password TEXT,
        role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'ADMIN')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        provider TEXT NOT NULL,
        provider_account_id TEXT NOT NULL,
        refresh_token TEXT,
        access_token TEXT,
        expires_at BIGINT,
        token_type TEXT,
        scope TEXT,
        id_token TEXT,
        session_state TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id SERIAL PRIMARY KEY,
        session_token TEXT NOT NULL UNIQUE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expires TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_tokens (
        identifier TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (identifier, token)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_lower ON users (lower(email))",
    "CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_token ON sessions (session_token)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions (expires)",
)

_SESSION_AND_USER_SQL = """
    SELECT s.id AS session_id, s.session_token, s.user_id, s.expires,
           s.created_at AS session_created_at,
           u.id, u.email, u.name, u.password, u.role, u.created_at, u.updated_at
    FROM sessions s
    JOIN users u ON u.id = s.user_id
    WHERE s.session_token = %s AND s.expires > now()
"""


def _int_id(value: Any) -> Optional[int]:
    """Serial ids arrive as strings; anything non-numeric cannot match a row."""
    text = str(value).strip()
    if not text.isdigit():
        return None
    return int(text)


class PostgresStore:
    """Postgres-backed store for users, accounts, sessions and verification tokens."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 20,
        connect_timeout: float = 2.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        conn_kwargs: Dict[str, Any] = {
            "row_factory": dict_row,
            "autocommit": False,
            # libpq only accepts whole seconds, minimum 2
            "connect_timeout": max(2, int(round(connect_timeout))),
        }
        if statement_timeout_ms:
            conn_kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            kwargs=conn_kwargs,
            open=True,
        )

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error(
                "database_unavailable", error=str(exc), error_type=type(exc).__name__
            )
            raise StoreUnavailable("database unavailable") from exc

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("database_schema_ensured", statements=len(SCHEMA_STATEMENTS))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            password=row.get("password"),
            role=Role(row.get("role") or Role.USER.value),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            updated_at=ensure_aware(row.get("updated_at") or utcnow()),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            session_token=row["session_token"],
            user_id=str(row["user_id"]),
            expires=ensure_aware(row["expires"]),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
        )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row.get("type") or "oauth",
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            refresh_token=row.get("refresh_token"),
            access_token=row.get("access_token"),
            expires_at=row.get("expires_at"),
            token_type=row.get("token_type"),
            scope=row.get("scope"),
            id_token=row.get("id_token"),
            session_state=row.get("session_state"),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
        )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, name, password, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email.strip(), name, password, Role(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        key = _int_id(user_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (key,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email.strip(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_account(self, provider: str, provider_account_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM users u
                JOIN accounts a ON u.id = a.user_id
                WHERE a.provider = %s AND a.provider_account_id = %s
                """,
                (provider, provider_account_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC, id DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        columns = validated_user_updates(fields)
        key = _int_id(user_id)
        if key is None:
            return None
        if not columns:
            return self.get_user(user_id)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in columns
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE users SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        params = [
            value.value if isinstance(value, Role) else value for value in columns.values()
        ]
        with self._connect() as conn:
            row = conn.execute(query, (*params, key)).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        key = _int_id(user_id)
        if key is None:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (key,))
            return result.rowcount > 0

    # -- accounts ------------------------------------------------------------

    def link_account(self, account: Account) -> Account:
        key = _int_id(account.user_id)
        if key is None:
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO accounts (
                        user_id, type, provider, provider_account_id, refresh_token,
                        access_token, expires_at, token_type, scope, id_token, session_state
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        key,
                        account.type,
                        account.provider,
                        account.provider_account_id,
                        account.refresh_token,
                        account.access_token,
                        account.expires_at,
                        account.token_type,
                        account.scope,
                        account.id_token,
                        account.session_state,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account already linked",
                {"provider": account.provider, "field": "provider_account_id"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        return self._account_from_row(row)

    def unlink_account(self, provider: str, provider_account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM accounts WHERE provider = %s AND provider_account_id = %s",
                (provider, provider_account_id),
            )
            return result.rowcount > 0

    def list_accounts(self, user_id: str) -> List[Account]:
        key = _int_id(user_id)
        if key is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE user_id = %s ORDER BY id", (key,)
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    # -- sessions ------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        expires: datetime,
        *,
        session_token: Optional[str] = None,
    ) -> Session:
        key = _int_id(user_id)
        if key is None:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sessions (session_token, user_id, expires)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (session_token or new_session_token(), key, ensure_aware(expires)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "session_token"})
        return self._session_from_row(row)

    def get_session_and_user(self, session_token: str) -> Optional[Tuple[Session, User]]:
        with self._connect() as conn:
            row = conn.execute(_SESSION_AND_USER_SQL, (session_token,)).fetchone()
        if not row:
            return None
        sess = Session(
            id=str(row["session_id"]),
            session_token=row["session_token"],
            user_id=str(row["user_id"]),
            expires=ensure_aware(row["expires"]),
            created_at=ensure_aware(row.get("session_created_at") or utcnow()),
        )
        return sess, self._user_from_row(row)

    def update_session(self, session_token: str, expires: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE sessions SET expires = %s WHERE session_token = %s RETURNING *",
                (ensure_aware(expires), session_token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE session_token = %s", (session_token,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        key = _int_id(user_id)
        if key is None:
            return 0
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE user_id = %s", (key,))
            return result.rowcount

    def delete_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE expires <= now()")
            return result.rowcount

    # -- verification tokens -------------------------------------------------

    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO verification_tokens (identifier, token, expires)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (identifier, token, ensure_aware(expires)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("verification token already exists", {"field": "token"})
        return VerificationToken(
            identifier=row["identifier"], token=row["token"], expires=ensure_aware(row["expires"])
        )

    def use_verification_token(self, identifier: str, token: str) -> Optional[VerificationToken]:
        """Delete and return the token in one statement so it is redeemed at most once."""
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM verification_tokens
                WHERE identifier = %s AND token = %s
                RETURNING identifier, token, expires
                """,
                (identifier, token),
            ).fetchone()
        if not row:
            return None
        return VerificationToken(
            identifier=row["identifier"], token=row["token"], expires=ensure_aware(row["expires"])
        )

    def delete_expired_verification_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM verification_tokens WHERE expires <= now()")
            return result.rowcount


__all__ = ["PostgresStore", "SCHEMA_STATEMENTS"]
