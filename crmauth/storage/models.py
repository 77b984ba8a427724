from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PrincipalSummary:
    """Public view of a principal returned by login, refresh and user-info."""

    id: str
    username: str
    email: str
    roles: Tuple[str, ...]
    tenant_id: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Principal:
    id: str
    username: str
    email: str
    password_hash: str
    roles: Tuple[str, ...] = ("USER",)
    tenant_id: str = "public"
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    reset_token: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    credentials_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        roles: Tuple[str, ...] = ("USER",),
        tenant_id: str = "public",
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> "Principal":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            roles=tuple(roles),
            tenant_id=tenant_id,
            full_name=full_name,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
        )

    def summary(self) -> PrincipalSummary:
        return PrincipalSummary(
            id=self.id,
            username=self.username,
            email=self.email,
            roles=self.roles,
            tenant_id=self.tenant_id,
            full_name=self.full_name,
            phone_number=self.phone_number,
            is_active=self.is_active,
            last_login_at=self.last_login_at,
            created_at=self.created_at,
        )


@dataclass
class AttemptCounter:
    source: str
    failures: int
    window_started_at: datetime

    def window_expires_at(self, window: timedelta) -> datetime:
        return self.window_started_at + window


@dataclass
class RevokedTokenEntry:
    digest: str
    expires_at: datetime


@dataclass(frozen=True)
class AuditEvent:
    activity: str
    entity_type: str
    entity_id: Optional[str] = None
    subject_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
