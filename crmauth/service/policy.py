from __future__ import annotations

from crmauth.service.errors import ForbiddenError
from crmauth.service.tokens import TokenClaims


def has_role(claims: TokenClaims, role: str) -> bool:
    wanted = role.upper()
    return any(granted.upper() == wanted for granted in claims.roles)


def require_role(claims: TokenClaims, role: str) -> None:
    """Raise :class:`ForbiddenError` unless ``claims`` grant ``role``."""
    if not has_role(claims, role):
        raise ForbiddenError(f"{role.lower()} access required")
