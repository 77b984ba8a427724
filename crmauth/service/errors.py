from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, NoReturn, Optional, TypeVar

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown login id or wrong password; both look the same to the caller."""


class TooManyAttemptsError(AuthenticationError):
    """The request source is locked out after repeated failures."""


class InvalidTokenError(AuthenticationError):
    """Token failed signature, expiry, kind or revocation checks."""


class TokenRefreshError(InvalidTokenError):
    """Refresh token could not be exchanged for a new pair."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthError(str, Enum):
    """Failure outcomes of the auth orchestrator."""

    INVALID_CREDENTIALS = "invalid_credentials"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_TOKEN = "invalid_token"
    TOKEN_REFRESH = "token_refresh"
    # Internal only; surfaced to callers as INVALID_TOKEN
    USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "AuthResult[T]":
        return cls(error=error)


def raise_for_auth_error(error: AuthError, *, lockout_status_code: int = 401) -> NoReturn:
    """Translate an orchestrator failure into the exception rendered at the HTTP boundary."""

    if error is AuthError.INVALID_CREDENTIALS:
        raise InvalidCredentialsError("invalid credentials")
    if error is AuthError.TOO_MANY_ATTEMPTS:
        if lockout_status_code == 429:
            raise TooManyAttemptsError(
                "too many failed login attempts",
                status_code=429,
                error_code="rate_limited",
            )
        raise TooManyAttemptsError("too many failed login attempts")
    if error is AuthError.TOKEN_REFRESH:
        raise TokenRefreshError("invalid refresh token")
    raise InvalidTokenError("invalid token")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TooManyAttemptsError",
    "InvalidTokenError",
    "TokenRefreshError",
    "ForbiddenError",
    "AuthError",
    "AuthResult",
    "raise_for_auth_error",
]
