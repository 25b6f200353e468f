from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokenward.storage.models import LoginAttempt, User

MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class LoginRequest(BaseModel):
    # Blank credentials are rejected by the session layer with a 400
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TokenValidateRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    kind: Optional[Literal["ACCESS", "REFRESH"]] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _upper_kind(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class TokenValidateResponse(BaseModel):
    valid: bool
    subject: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class TokenDisableRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class CreateUserRequest(BaseModel):
    email: str
    password: str
    firstname: Optional[str] = Field(default=None, max_length=128)
    lastname: Optional[str] = Field(default=None, max_length=128)
    role: Optional[Literal["USER", "ADMIN"]] = None

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("firstname", "lastname")
    @classmethod
    def _clean_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class UpdateUserRequest(BaseModel):
    firstname: Optional[str] = Field(default=None, max_length=128)
    lastname: Optional[str] = Field(default=None, max_length=128)

    @field_validator("firstname", "lastname")
    @classmethod
    def _clean_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class UserRoleRequest(BaseModel):
    role: Literal["USER", "ADMIN"]


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role.value,
            status=user.status.value,
            firstname=user.firstname,
            lastname=user.lastname,
            created_at=user.created_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class RevokeTokensResponse(BaseModel):
    user_id: str
    revoked: int


class LoginAttemptResponse(BaseModel):
    id: str
    successful: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "LoginAttemptResponse":
        return cls(
            id=attempt.id,
            successful=attempt.successful,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            failure_reason=attempt.failure_reason,
            timestamp=attempt.timestamp,
        )


class LoginAttemptListResponse(BaseModel):
    user_id: str
    suspicious: bool
    items: List[LoginAttemptResponse]
