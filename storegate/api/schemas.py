from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from storegate.service.validation import (
    normalize_unicode,
    validate_email,
    validate_password_strength,
)
from storegate.storage.models import Role, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope. The request id travels in the X-Request-ID header."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str
    password: str
    confirm_password: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = normalize_unicode(value.strip())
        if len(normalized) < 2:
            raise ValueError("name must be at least 2 characters")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords don't match")
        return self


class LoginRequest(BaseModel):
    # Shape is checked by the credentials strategy so every rejection looks the same
    email: str = Field(..., max_length=512)
    password: str = Field(..., max_length=1024)


class VerifyTokenRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    token: str = Field(..., min_length=1, max_length=256)


class RoleUpdateRequest(BaseModel):
    role: Role


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: Role
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at,
        )


class IdentityResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: Role


class SessionResponse(BaseModel):
    user: IdentityResponse
    expires: datetime


class LoginResponse(BaseModel):
    user: IdentityResponse
    session_token: str
    expires: datetime
    token_type: str = "bearer"


class ProviderResponse(BaseModel):
    id: str
    type: str
    signin_url: Optional[str] = None


class UserListResponse(BaseModel):
    items: List[UserResponse]
