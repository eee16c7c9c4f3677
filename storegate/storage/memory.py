from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from storegate.logging import get_logger
from storegate.storage.common import email_key, ensure_aware, validated_user_updates
from storegate.storage.errors import ConstraintViolation
from storegate.storage.models import (
    Account,
    Role,
    Session,
    User,
    VerificationToken,
    new_session_token,
    utcnow,
)


class MemoryStore:
    """Process-local store used for tests and single-process development.

    Every operation runs under one re-entrant lock, so compound operations
    such as consuming a verification token are atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.accounts: Dict[Tuple[str, str], Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.verification_tokens: Dict[Tuple[str, str], VerificationToken] = {}
        self._user_seq = 0
        self._account_seq = 0
        self._session_seq = 0
        # RLock for all data operations to allow nested acquisitions
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User:
        with self._data_lock:
            key = email_key(email)
            if any(email_key(existing.email) == key for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self._user_seq += 1
            now = utcnow()
            user = User(
                id=str(self._user_seq),
                email=email.strip(),
                name=name,
                password=password,
                role=Role(role),
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(str(user_id))
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            key = email_key(email)
            user = next((u for u in self.users.values() if email_key(u.email) == key), None)
            return replace(user) if user else None

    def get_user_by_account(self, provider: str, provider_account_id: str) -> Optional[User]:
        with self._data_lock:
            account = self.accounts.get((provider, provider_account_id))
            if not account:
                return None
            return self.get_user(account.user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(
                self.users.values(), key=lambda u: (u.created_at, int(u.id)), reverse=True
            )
            return [replace(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        columns = validated_user_updates(fields)
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                return None
            for column, value in columns.items():
                setattr(user, column, value)
            user.updated_at = utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user_id = str(user_id)
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for key, account in list(self.accounts.items()):
                if account.user_id == user_id:
                    self.accounts.pop(key, None)
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            return True

    # -- accounts ------------------------------------------------------------

    def link_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
            key = (account.provider, account.provider_account_id)
            if key in self.accounts:
                raise ConstraintViolation(
                    "account already linked",
                    {"provider": account.provider, "field": "provider_account_id"},
                )
            self._account_seq += 1
            stored = replace(account, id=str(self._account_seq), created_at=utcnow())
            self.accounts[key] = stored
            return replace(stored)

    def unlink_account(self, provider: str, provider_account_id: str) -> bool:
        with self._data_lock:
            return self.accounts.pop((provider, provider_account_id), None) is not None

    def list_accounts(self, user_id: str) -> List[Account]:
        with self._data_lock:
            return [replace(a) for a in self.accounts.values() if a.user_id == str(user_id)]

    # -- sessions ------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        expires: datetime,
        *,
        session_token: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if str(user_id) not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = session_token or new_session_token()
            if token in self.sessions:
                raise ConstraintViolation("session token already exists", {"field": "session_token"})
            self._session_seq += 1
            sess = Session.new(
                str(self._session_seq),
                str(user_id),
                expires=ensure_aware(expires),
                session_token=token,
            )
            self.sessions[token] = sess
            return replace(sess)

    def get_session_and_user(self, session_token: str) -> Optional[Tuple[Session, User]]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or sess.is_expired():
                return None
            user = self.users.get(sess.user_id)
            if not user:
                return None
            return replace(sess), replace(user)

    def update_session(self, session_token: str, expires: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess:
                return None
            sess.expires = ensure_aware(expires)
            return replace(sess)

    def delete_session(self, session_token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_token, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.user_id == str(user_id)]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def delete_expired_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            stale = [t for t, s in self.sessions.items() if s.is_expired(now)]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    # -- verification tokens -------------------------------------------------

    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken:
        with self._data_lock:
            # token is unique on its own, not per identifier
            if any(key[1] == token for key in self.verification_tokens):
                raise ConstraintViolation("verification token already exists", {"field": "token"})
            record = VerificationToken(
                identifier=identifier, token=token, expires=ensure_aware(expires)
            )
            self.verification_tokens[(identifier, token)] = record
            return replace(record)

    def use_verification_token(self, identifier: str, token: str) -> Optional[VerificationToken]:
        """Delete and return the token. Only one caller can ever receive it."""
        with self._data_lock:
            return self.verification_tokens.pop((identifier, token), None)

    def delete_expired_verification_tokens(self) -> int:
        with self._data_lock:
            now = utcnow()
            stale = [k for k, v in self.verification_tokens.items() if v.is_expired(now)]
            for key in stale:
                self.verification_tokens.pop(key, None)
            return len(stale)

    # -- lifecycle -----------------------------------------------------------

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


__all__ = ["MemoryStore"]
