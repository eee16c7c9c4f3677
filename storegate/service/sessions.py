"""Session issuance, resolution and sign-out.

A session moves through ``Unauthenticated -> Issued -> (Refreshed)* ->
Expired | SignedOut``. With the ``jwt`` strategy the whole session is the
signed token. With the ``database`` strategy the token names a row in the
sessions table and the user's role is read fresh on every resolve.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import inspect
import json
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from storegate.config import SessionStrategy, Settings
from storegate.logging import get_logger
from storegate.service.auth import AuthStore, Identity
from storegate.storage.models import Role

logger = get_logger(__name__)

SIGN_IN = "sign_in"
SIGN_OUT = "sign_out"


@dataclass
class IssuedSession:
    token: str
    expires: datetime
    identity: Identity


@dataclass
class SessionView:
    """What a resolved session tells the rest of the app about the caller."""

    user_id: str
    email: str
    name: Optional[str]
    role: Role
    expires: datetime
    token: str
    refreshed_token: Optional[str] = None

    @property
    def identity(self) -> Identity:
        return Identity(id=self.user_id, email=self.email, name=self.name, role=self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.identity.to_dict(),
            "expires": self.expires.isoformat(),
        }


Listener = Callable[[str, Dict[str, Any]], Any]


class SessionEvents:
    """Fire-and-forget sign-in/sign-out notifications.

    Listeners run after the state change they describe. A failing or slow
    listener is logged and never alters the outcome for the caller.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            if inspect.iscoroutinefunction(listener):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.warning("session_event_dropped", session_event=event, reason="no_loop")
                    continue
                task = loop.create_task(self._run_async(listener, event, payload))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                continue
            try:
                listener(event, payload)
            except Exception as exc:
                logger.warning(
                    "session_event_listener_failed",
                    session_event=event,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def _run_async(self, listener: Listener, event: str, payload: Dict[str, Any]) -> None:
        try:
            await listener(event, payload)
        except Exception as exc:
            logger.warning(
                "session_event_listener_failed",
                session_event=event,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for scheduled listeners; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def log_session_event(event: str, payload: Dict[str, Any]) -> None:
    if event == SIGN_IN:
        logger.info(
            "user_signed_in",
            user_id=payload.get("user_id"),
            provider=payload.get("provider"),
            is_new_user=payload.get("is_new_user", False),
        )
    elif event == SIGN_OUT:
        logger.info("user_signed_out", user_id=payload.get("user_id"))


def validate_redirect(url: Optional[str], base_url: str) -> str:
    """Return a post-auth redirect that cannot leave the application.

    Same-origin absolute URLs and single-slash relative paths pass through
    unchanged; anything else collapses to ``base_url``.
    """
    if not url or not isinstance(url, str):
        return base_url
    candidate = url.strip()
    if any(ch in candidate for ch in ("\\", "\r", "\n", "\t")):
        return base_url
    if candidate.startswith("/"):
        if candidate.startswith("//"):
            return base_url
        return candidate
    try:
        parsed = urlparse(candidate)
        base = urlparse(base_url)
        same_origin = (
            parsed.scheme in {"http", "https"}
            and parsed.scheme == base.scheme
            and parsed.hostname is not None
            and parsed.hostname == base.hostname
            and parsed.port == base.port
            and not parsed.username
            and not parsed.password
        )
    except ValueError:
        return base_url
    return candidate if same_origin else base_url


class SessionIssuer:
    """Issues, resolves, refreshes and revokes sessions for either strategy."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        events: SessionEvents,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.strategy = settings.session_strategy
        self.max_age = timedelta(seconds=settings.session_max_age_seconds)
        self.update_age = timedelta(seconds=settings.session_update_age_seconds)
        self._clock = clock
        self._revoked_lock = threading.Lock()
        # jti -> exp timestamp for signed-out JWTs
        self._revoked_jtis: dict[str, float] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- JWT -----------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm")
                return None
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    def _jwt_claims(self, identity: Identity, *, issued_at: float) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "email": identity.email,
            "name": identity.name,
            "role": identity.role.value,
            "iat": int(issued_at),
            "exp": int(issued_at + self.max_age.total_seconds()),
            "jti": uuid.uuid4().hex,
        }

    def _is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        with self._revoked_lock:
            return jti in self._revoked_jtis

    def cleanup_revoked(self) -> int:
        now = self._clock()
        with self._revoked_lock:
            expired = [jti for jti, exp in self._revoked_jtis.items() if exp <= now]
            for jti in expired:
                self._revoked_jtis.pop(jti, None)
        return len(expired)

    # -- lifecycle -----------------------------------------------------------

    def _mint(self, identity: Identity) -> IssuedSession:
        now = self._now()
        if self.strategy == SessionStrategy.DATABASE:
            sess = self.store.create_session(identity.id, now + self.max_age)
            return IssuedSession(token=sess.session_token, expires=sess.expires, identity=identity)
        claims = self._jwt_claims(identity, issued_at=now.timestamp())
        return IssuedSession(
            token=self._encode_jwt(claims),
            expires=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            identity=identity,
        )

    def _signed_in(self, issued: IssuedSession, provider: str, is_new_user: bool) -> None:
        self.events.emit(
            SIGN_IN,
            {"user_id": issued.identity.id, "provider": provider, "is_new_user": is_new_user},
        )

    def issue(
        self, identity: Identity, *, provider: str = "credentials", is_new_user: bool = False
    ) -> IssuedSession:
        issued = self._mint(identity)
        self._signed_in(issued, provider, is_new_user)
        return issued

    async def issue_async(
        self, identity: Identity, *, provider: str = "credentials", is_new_user: bool = False
    ) -> IssuedSession:
        """``issue`` with the session row written off the event loop.

        Events are emitted back on the loop so async listeners get scheduled.
        """
        issued = await asyncio.to_thread(self._mint, identity)
        self._signed_in(issued, provider, is_new_user)
        return issued

    def resolve(self, token: Optional[str]) -> Optional[SessionView]:
        """Return the live session for ``token`` or ``None``.

        Tampered, expired, signed-out and unknown tokens all yield ``None``.
        """
        if not token:
            return None
        if self.strategy == SessionStrategy.DATABASE:
            return self._resolve_database(token)
        return self._resolve_jwt(token)

    def _resolve_jwt(self, token: str) -> Optional[SessionView]:
        payload = self._decode_jwt(token)
        if not payload or self._is_revoked(payload.get("jti")):
            return None
        try:
            role = Role(payload.get("role"))
        except ValueError:
            return None
        view = SessionView(
            user_id=str(payload.get("sub")),
            email=payload.get("email") or "",
            name=payload.get("name"),
            role=role,
            expires=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            token=token,
        )
        issued_at = float(payload.get("iat") or 0)
        if self._clock() - issued_at >= self.update_age.total_seconds():
            claims = self._jwt_claims(view.identity, issued_at=self._clock())
            view.refreshed_token = self._encode_jwt(claims)
            view.expires = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return view

    def _resolve_database(self, token: str) -> Optional[SessionView]:
        found = self.store.get_session_and_user(token)
        if not found:
            return None
        sess, user = found
        now = self._now()
        if sess.expires <= now:
            return None
        view = SessionView(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=Role(user.role),
            expires=sess.expires,
            token=token,
        )
        # Refresh once the session has lived longer than update_age
        if sess.expires - self.max_age + self.update_age <= now:
            updated = self.store.update_session(token, now + self.max_age)
            if updated:
                # same token, re-sent so the cookie picks up the new expiry
                view.expires = updated.expires
                view.refreshed_token = token
                logger.debug("session_refreshed", user_id=user.id)
        return view

    async def resolve_async(self, token: Optional[str]) -> Optional[SessionView]:
        return await asyncio.to_thread(self.resolve, token)

    def _end(self, token: str) -> tuple[bool, Optional[str]]:
        user_id: Optional[str] = None
        if self.strategy == SessionStrategy.DATABASE:
            found = self.store.get_session_and_user(token)
            user_id = found[1].id if found else None
            return self.store.delete_session(token), user_id
        payload = self._decode_jwt(token)
        if not payload or not payload.get("jti"):
            return False, None
        with self._revoked_lock:
            self._revoked_jtis[payload["jti"]] = float(payload["exp"])
        return True, str(payload.get("sub"))

    def sign_out(self, token: Optional[str]) -> bool:
        if not token:
            return False
        removed, user_id = self._end(token)
        if removed:
            self.events.emit(SIGN_OUT, {"user_id": user_id})
        return removed

    async def sign_out_async(self, token: Optional[str]) -> bool:
        if not token:
            return False
        removed, user_id = await asyncio.to_thread(self._end, token)
        if removed:
            self.events.emit(SIGN_OUT, {"user_id": user_id})
        return removed


class Redemption(str, Enum):
    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class VerificationTokens:
    """Single-use tokens (email verification, magic links).

    Only a keyed hash of the token is stored, so a leaked table cannot be
    replayed.
    """

    DEFAULT_TTL = timedelta(hours=24)

    def __init__(self, settings: Settings, store: AuthStore) -> None:
        self.settings = settings
        self.store = store

    def _hash(self, token: str) -> str:
        return hashlib.sha256(f"{token}{self.settings.session_secret}".encode()).hexdigest()

    def create(self, identifier: str, ttl: timedelta | None = None) -> str:
        token = secrets.token_urlsafe(32)
        expires = datetime.now(timezone.utc) + (ttl or self.DEFAULT_TTL)
        self.store.create_verification_token(identifier, self._hash(token), expires)
        logger.info("verification_token_created", identifier=identifier)
        return token

    def redeem(self, identifier: str, token: str) -> Redemption:
        record = self.store.use_verification_token(identifier, self._hash(token))
        if record is None:
            return Redemption.NOT_FOUND
        if record.is_expired():
            logger.info("verification_token_expired", identifier=identifier)
            return Redemption.EXPIRED
        return Redemption.REDEEMED


__all__ = [
    "IssuedSession",
    "Redemption",
    "SessionEvents",
    "SessionIssuer",
    "SessionView",
    "VerificationTokens",
    "log_session_event",
    "validate_redirect",
]
