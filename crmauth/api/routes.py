from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from crmauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PrincipalResponse,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
)
from crmauth.service.errors import (
    AuthError,
    AuthenticationError,
    ValidationError,
    raise_for_auth_error,
)
from crmauth.service.policy import require_role
from crmauth.service.runtime import get_runtime
from crmauth.service.tokens import TokenClaims

router = APIRouter(prefix="/v1")

_RESET_REQUEST_MESSAGE = (
    "If your email is registered, you will receive a password reset link"
)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def request_source(request: Request) -> str:
    """Client address used to key login throttling.

    The first ``X-Forwarded-For`` hop wins when proxies are trusted.
    """
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _bearer_or_401(authorization: Optional[str]) -> str:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


async def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    """Verified access-token claims for the caller, passed explicitly to handlers."""
    token = _bearer_or_401(authorization)
    result = await get_runtime().auth.authorize(token)
    if not result.ok:
        raise_for_auth_error(result.error)
    return result.value


async def get_admin_claims(claims: TokenClaims = Depends(get_claims)) -> TokenClaims:
    require_role(claims, "ADMIN")
    return claims


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with a login id (username or email) and password.

    Raises:
        401: invalid credentials, or the source is locked out
        429: the source is locked out and LOCKOUT_STATUS_CODE=429
    """
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        body.login_id, body.password, source=request_source(request)
    )
    if not result.ok:
        raise_for_auth_error(
            result.error, lockout_status_code=runtime.settings.lockout_status_code
        )
    return Envelope(status="ok", data=TokenPairResponse.from_pair(result.value))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, claims: TokenClaims = Depends(get_admin_claims)):
    runtime = get_runtime()
    summary = await runtime.auth.register(
        claims,
        username=body.login_id,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        phone_number=body.phone_number,
        roles=body.roles,
    )
    return Envelope(status="ok", data=PrincipalResponse.from_summary(summary))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    if not result.ok:
        raise_for_auth_error(result.error)
    return Envelope(status="ok", data=TokenPairResponse.from_pair(result.value))


@router.get("/auth/user-info", response_model=Envelope, tags=["auth"])
async def user_info(authorization: Optional[str] = Header(None)):
    token = _bearer_or_401(authorization)
    result = await get_runtime().auth.get_user_info(token)
    if not result.ok:
        raise_for_auth_error(result.error)
    return Envelope(status="ok", data=PrincipalResponse.from_summary(result.value))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the bearer token and, when supplied, the refresh token.

    Tokens that are already invalid are ignored so repeated logouts succeed.
    """
    token = _bearer_or_401(authorization)
    runtime = get_runtime()
    await runtime.auth.logout(token)
    if body is not None and body.refresh_token:
        await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, claims: TokenClaims = Depends(get_claims)
):
    """Change the caller's password; tokens issued before the change stop working."""
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        claims, body.current_password, body.new_password
    )
    if result.error is AuthError.INVALID_CREDENTIALS:
        raise ValidationError("current password is incorrect")
    if not result.ok:
        raise_for_auth_error(result.error)
    return Envelope(status="ok", data={"message": "password changed"})


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    # Identical response whether or not the identifier exists
    return Envelope(status="ok", data={"message": _RESET_REQUEST_MESSAGE})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    if not await runtime.auth.reset_password(body.reset_token, body.new_password):
        raise ValidationError("invalid or expired password reset token")
    return Envelope(status="ok", data={"message": "password has been reset"})
