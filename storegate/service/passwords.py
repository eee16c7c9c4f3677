from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storegate.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id password hashing.

    ``verify`` never raises: a mismatch, an empty digest and a digest that
    is not argon2 at all all come back as ``False``.
    """

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Burned on unknown-user sign-ins so they cost the same as a wrong password
        self._dummy_digest = self._pwd_hasher.hash("storegate-dummy-credential")

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str | None) -> bool:
        if not digest or plaintext is None:
            return False
        try:
            return self._pwd_hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unusable", error_type=type(exc).__name__)
            return False

    def verify_dummy(self, plaintext: str) -> None:
        self.verify(plaintext or "", self._dummy_digest)

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


__all__ = ["CredentialHasher"]
