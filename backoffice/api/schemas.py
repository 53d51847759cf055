from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from backoffice.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_SCOPE_TYPE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
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


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return value


# -- auth --------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: datetime


class ScopeResponse(BaseModel):
    scope_type: str
    scope_value: str


class ProfileResponse(BaseModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    roles: List[str]
    permissions: List[str]
    scopes: List[ScopeResponse]


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class UpdateProfileRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    email: str

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: str) -> str:
        return _validate_email(value)


# -- users -------------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    is_active: bool
    roles: List[str]
    created_at: datetime
    version: int


class UserCreateRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: str
    password: str = Field(..., max_length=256)
    full_name: Optional[str] = Field(default=None, max_length=200)
    is_active: bool = True
    role_ids: List[str] = Field(default_factory=list, max_length=100)

    @field_validator("username")
    @classmethod
    def _validate_create_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)


class UserUpdateRequest(BaseModel):
    email: str
    full_name: Optional[str] = Field(default=None, max_length=200)
    is_active: bool
    role_ids: List[str] = Field(default_factory=list, max_length=100)
    version: int = Field(..., ge=1)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: str) -> str:
        return _validate_email(value)


class OverrideRequest(BaseModel):
    permission_code: str = Field(..., min_length=1, max_length=100)
    is_allowed: bool


class ScopeItem(BaseModel):
    scope_type: str = Field(..., min_length=1, max_length=50)
    scope_value: str = Field(..., min_length=1, max_length=200)

    @field_validator("scope_type")
    @classmethod
    def _validate_scope_type(cls, value: str) -> str:
        if not _SCOPE_TYPE_PATTERN.match(value):
            raise ValueError("scope_type must be an identifier")
        return value


class ScopesRequest(BaseModel):
    scopes: List[ScopeItem] = Field(default_factory=list, max_length=500)


# -- roles and permissions ---------------------------------------------------


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool
    permissions: List[str]
    created_at: datetime
    version: int


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RoleUpdateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    version: int = Field(..., ge=1)


class RolePermissionsRequest(BaseModel):
    permission_codes: List[str] = Field(default_factory=list, max_length=500)


class PermissionResponse(BaseModel):
    id: str
    code: str
    name: str
    group: str
    description: Optional[str] = None
