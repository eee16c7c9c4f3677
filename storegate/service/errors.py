from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Raised by the auth services and rendered as an error envelope.

    Subclasses pin the HTTP status and the envelope ``code``; both can be
    overridden per instance.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Sign-in rejected. Unknown email, wrong password and OAuth-only
    accounts all produce this same message."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email on registration (409)."""

    status_code = 409
    error_code = "conflict"


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "ForbiddenError",
    "InvalidCredentialsError",
    "NotFoundError",
    "ServiceError",
    "ValidationError",
]
