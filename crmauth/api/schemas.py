from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from crmauth.service.auth import IssuedTokenPair
from crmauth.storage.models import PrincipalSummary

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error payload with a stable ``code`` clients can branch on."""

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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_LOGIN_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._@+-]+$")


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


def _validate_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 120:
        raise ValueError("password must be at most 120 characters")
    return value


class LoginRequest(BaseModel):
    login_id: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=120)

    @field_validator("login_id")
    @classmethod
    def _normalize_login_id(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RegisterRequest(BaseModel):
    login_id: str = Field(..., min_length=3, max_length=50)
    email: str
    password: str
    full_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=20)
    roles: List[str] = Field(default_factory=lambda: ["USER"], max_length=10)

    @field_validator("login_id")
    @classmethod
    def _validate_login_id(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if not _LOGIN_ID_PATTERN.match(normalized):
            raise ValueError("login_id may contain letters, digits and . _ @ + - only")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=120)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)


class PasswordResetConfirm(BaseModel):
    reset_token: str = Field(..., min_length=1, max_length=4096)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PrincipalResponse(BaseModel):
    id: str
    login_id: str
    email: str
    roles: List[str]
    tenant_id: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: PrincipalSummary) -> "PrincipalResponse":
        return cls(
            id=summary.id,
            login_id=summary.username,
            email=summary.email,
            roles=list(summary.roles),
            tenant_id=summary.tenant_id,
            full_name=summary.full_name,
            phone_number=summary.phone_number,
            is_active=summary.is_active,
            last_login_at=summary.last_login_at,
            created_at=summary.created_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    token_expiry: datetime
    refresh_token_expiry: datetime
    principal: PrincipalResponse

    @classmethod
    def from_pair(cls, pair: IssuedTokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            token_expiry=pair.access_expires_at,
            refresh_token_expiry=pair.refresh_expires_at,
            principal=PrincipalResponse.from_summary(pair.principal),
        )
