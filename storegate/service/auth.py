from __future__ import annotations

import asyncio
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from storegate.config import Settings
from storegate.logging import get_logger
from storegate.service.errors import ConflictError
from storegate.service.passwords import CredentialHasher
from storegate.service.validation import validate_email, validate_password_length
from storegate.storage.errors import ConstraintViolation
from storegate.storage.models import Account, Role, Session, User, VerificationToken

# OAuth provider endpoints
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class AuthStore(Protocol):
    """Storage capabilities the auth services depend on.

    Absence is reported as ``None``/``False``. Duplicate keys raise
    ``ConstraintViolation`` and unreachable backends ``StoreUnavailable``.
    """

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_account(self, provider: str, provider_account_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def link_account(self, account: Account) -> Account: ...

    def unlink_account(self, provider: str, provider_account_id: str) -> bool: ...

    def create_session(
        self, user_id: str, expires: datetime, *, session_token: Optional[str] = None
    ) -> Session: ...

    def get_session_and_user(self, session_token: str) -> Optional[Tuple[Session, User]]: ...

    def update_session(self, session_token: str, expires: datetime) -> Optional[Session]: ...

    def delete_session(self, session_token: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self) -> int: ...

    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken: ...

    def use_verification_token(self, identifier: str, token: str) -> Optional[VerificationToken]: ...

    def delete_expired_verification_tokens(self) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class Identity:
    """Normalized claim produced by every authentication strategy."""

    id: str
    email: str
    name: Optional[str]
    role: Role

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(id=user.id, email=user.email, name=user.name, role=Role(user.role))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role.value}


class CredentialsShape(BaseModel):
    """Shape check applied before a credentials lookup."""

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_length(value)


class AuthStrategy:
    """Base for the ways a caller can prove who they are."""

    name: str = ""
    type: str = ""

    def describe(self) -> Dict[str, str]:
        return {"id": self.name, "type": self.type}


class CredentialsStrategy(AuthStrategy):
    """Email and password sign-in against locally stored argon2 digests."""

    name = "credentials"
    type = "credentials"

    def __init__(self, store: AuthStore, hasher: CredentialHasher) -> None:
        self.store = store
        self.hasher = hasher

    async def authorize(self, email: Any, password: Any) -> Optional[Identity]:
        """Return the identity for valid credentials, otherwise ``None``.

        Malformed input, unknown email, OAuth-only users and wrong passwords
        are indistinguishable to the caller. Store outages propagate.
        """
        try:
            creds = CredentialsShape(email=email, password=password)
        except ValidationError:
            logger.info("credentials_rejected", reason="malformed")
            return None
        # argon2 and the store lookup both block
        return await asyncio.to_thread(self._check, creds)

    def _check(self, creds: CredentialsShape) -> Optional[Identity]:
        user = self.store.get_user_by_email(creds.email)
        if not user or not user.password:
            self.hasher.verify_dummy(creds.password)
            logger.info("credentials_rejected", reason="unknown_or_passwordless")
            return None
        if not self.hasher.verify(creds.password, user.password):
            logger.info("credentials_rejected", reason="mismatch", user_id=user.id)
            return None
        if self.hasher.needs_rehash(user.password):
            self.store.update_user(user.id, password=self.hasher.hash(creds.password))
            logger.info("password_rehashed", user_id=user.id)
        return Identity.from_user(user)


@dataclass
class OAuthResult:
    identity: Identity
    callback_url: str
    is_new_user: bool


class OAuthStrategy(AuthStrategy):
    """Authorization-code sign-in with an external identity provider."""

    type = "oauth"

    def __init__(
        self,
        provider: str,
        store: AuthStore,
        settings: Settings,
        *,
        client_id: str,
        client_secret: str,
    ) -> None:
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        self.name = provider
        self.provider_config = OAUTH_PROVIDERS[provider]
        self.store = store
        self.settings = settings
        self.client_id = client_id
        self.client_secret = client_secret
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[datetime, str]] = {}

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.app_base_url}/api/auth/callback/{self.name}"

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def start(self, callback_url: str) -> str:
        """Record a single-use state and return the provider authorization URL.

        ``callback_url`` must already be validated; it is replayed verbatim
        after the provider redirects back.
        """
        self.cleanup_expired_states()
        state = secrets.token_urlsafe(24)
        with self._state_lock:
            self._oauth_states[state] = (self._now() + OAUTH_STATE_TTL, callback_url)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.provider_config["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.provider_config['auth_url']}?{urlencode(params)}"

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s, (expires_at, _) in self._oauth_states.items() if expires_at <= now]
            for state in expired:
                self._oauth_states.pop(state, None)
        if expired:
            logger.debug("oauth_state_cleanup", provider=self.name, cleaned=len(expired))
        return len(expired)

    async def _exchange_code(self, code: str) -> Optional[dict]:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds, follow_redirects=False
            ) as client:
                token_response = await client.post(
                    self.provider_config["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    return None

                userinfo_response = await client.get(
                    self.provider_config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            return None

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=self.name)
            return None
        identity = self._parse_userinfo(userinfo)
        identity["tokens"] = {
            "access_token": access_token,
            "refresh_token": token_result.get("refresh_token"),
            "expires_in": token_result.get("expires_in"),
            "token_type": token_result.get("token_type"),
            "scope": token_result.get("scope"),
            "id_token": token_result.get("id_token"),
        }
        logger.info("oauth_exchange_success", provider=self.name)
        return identity

    def _parse_userinfo(self, userinfo: dict) -> dict:
        return {
            "provider_account_id": str(userinfo.get("id") or userinfo.get("sub") or ""),
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
        }

    def _account_from_identity(self, user_id: str, identity: dict) -> Account:
        tokens = identity.get("tokens") or {}
        expires_in = tokens.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)):
            expires_at = int(self._now().timestamp() + expires_in)
        return Account(
            user_id=user_id,
            provider=self.name,
            provider_account_id=identity["provider_account_id"],
            type="oauth",
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            expires_at=expires_at,
            token_type=tokens.get("token_type"),
            scope=tokens.get("scope"),
            id_token=tokens.get("id_token"),
        )

    async def complete(self, code: str, state: str) -> Optional[OAuthResult]:
        """Consume the state, exchange the code and resolve the local user."""
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if not stored or stored[0] <= self._now():
            logger.warning("oauth_state_invalid", provider=self.name)
            return None
        _, callback_url = stored

        identity = await self._exchange_code(code)
        if not identity or not identity.get("provider_account_id") or not identity.get("email"):
            logger.warning("oauth_identity_incomplete", provider=self.name)
            return None
        return await asyncio.to_thread(self._resolve_local_user, identity, callback_url)

    def _resolve_local_user(self, identity: dict, callback_url: str) -> Optional[OAuthResult]:
        provider_account_id = identity["provider_account_id"]
        user = self.store.get_user_by_account(self.name, provider_account_id)
        if user:
            return OAuthResult(Identity.from_user(user), callback_url, False)

        is_new_user = False
        user = self.store.get_user_by_email(identity["email"])
        if user and user.password:
            # Linking a provider to a password account needs the owner's consent
            logger.warning("oauth_account_not_linked", provider=self.name, user_id=user.id)
            return None
        if not user:
            try:
                user = self.store.create_user(
                    email=identity["email"],
                    name=identity.get("name") or identity["email"].split("@")[0],
                )
                is_new_user = True
            except ConstraintViolation:
                user = self.store.get_user_by_email(identity["email"])
                if not user or user.password:
                    return None

        try:
            self.store.link_account(self._account_from_identity(user.id, identity))
        except ConstraintViolation:
            # A concurrent callback linked the same provider account first
            linked = self.store.get_user_by_account(self.name, provider_account_id)
            if not linked:
                raise
            user = linked
        logger.info("oauth_account_linked", provider=self.name, user_id=user.id)
        return OAuthResult(Identity.from_user(user), callback_url, is_new_user)


def build_strategies(
    settings: Settings, store: AuthStore, hasher: CredentialHasher
) -> Dict[str, AuthStrategy]:
    """Credentials are always on; Google only when both client id and secret are set."""
    strategies: Dict[str, AuthStrategy] = {
        CredentialsStrategy.name: CredentialsStrategy(store, hasher),
    }
    if settings.google_enabled:
        strategies["google"] = OAuthStrategy(
            "google",
            store,
            settings,
            client_id=settings.google_client_id or "",
            client_secret=settings.google_client_secret or "",
        )
    elif settings.google_client_id or settings.google_client_secret:
        logger.warning("oauth_partially_configured", provider="google")
    return strategies


def register_user(
    store: AuthStore,
    hasher: CredentialHasher,
    *,
    name: str,
    email: str,
    password: str,
    role: Role = Role.USER,
) -> User:
    """Create a credentials user. Raises ConflictError when the email is taken."""
    if store.get_user_by_email(email):
        raise ConflictError(
            "An account with this email already exists", detail={"field": "email"}
        )
    try:
        user = store.create_user(
            email=email, name=name, password=hasher.hash(password), role=role
        )
    except ConstraintViolation as exc:
        raise ConflictError(
            "An account with this email already exists", detail=exc.detail
        ) from exc
    logger.info("user_registered", user_id=user.id, role=user.role.value)
    return user


__all__ = [
    "AuthStore",
    "AuthStrategy",
    "CredentialsStrategy",
    "Identity",
    "OAuthResult",
    "OAuthStrategy",
    "OAUTH_PROVIDERS",
    "build_strategies",
    "register_user",
]
