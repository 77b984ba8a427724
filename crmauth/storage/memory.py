from __future__ import annotations

import hmac
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence

from crmauth.logging import get_logger
from crmauth.storage.errors import ConstraintViolation
from crmauth.storage.models import AuditEvent, Principal, utcnow

_MUTABLE_FIELDS = frozenset({
    "username",
    "email",
    "password_hash",
    "roles",
    "full_name",
    "phone_number",
    "is_active",
    "reset_token",
    "reset_token_expires_at",
    "last_login_at",
    "credentials_changed_at",
})


class MemoryStore:
    """In-memory credential store.

    Principals are copied on the way in and out so callers only change shared
    state through :meth:`update_principal` and :meth:`consume_reset_ticket`.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()

    def create_principal(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        roles: Sequence[str] = ("USER",),
        tenant_id: str = "public",
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Principal:
        with self._data_lock:
            self._ensure_unique(username, email)
            principal = Principal.new(
                username,
                email,
                password_hash,
                roles=tuple(roles),
                tenant_id=tenant_id,
                full_name=full_name,
                phone_number=phone_number,
            )
            self.principals[principal.id] = principal
            self.logger.info(
                "principal_created", principal_id=principal.id, roles=list(principal.roles)
            )
            return replace(principal)

    def _ensure_unique(self, username: str, email: str, *, exclude_id: Optional[str] = None) -> None:
        for existing in self.principals.values():
            if existing.id == exclude_id:
                continue
            if existing.username.lower() == username.lower():
                raise ConstraintViolation("username already exists", {"field": "login_id"})
            if existing.email.lower() == email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})

    def find_by_login_id(self, login_id: str) -> Optional[Principal]:
        """Resolve a username, or failing that an email address, to a principal."""
        needle = login_id.strip().lower()
        with self._data_lock:
            by_username = next(
                (p for p in self.principals.values() if p.username.lower() == needle), None
            )
            found = by_username or next(
                (p for p in self.principals.values() if p.email.lower() == needle), None
            )
            return replace(found) if found else None

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            found = self.principals.get(principal_id)
            return replace(found) if found else None

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        """Apply ``changes`` to the stored principal and return the updated copy.

        Only the named fields are written, so two requests touching different
        fields of the same principal never overwrite each other.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update principal fields: {sorted(unknown)}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return None
            if "username" in changes or "email" in changes:
                self._ensure_unique(
                    changes.get("username", principal.username),
                    changes.get("email", principal.email),
                    exclude_id=principal_id,
                )
            updated = replace(principal, **changes, updated_at=utcnow())
            self.principals[principal_id] = updated
            return replace(updated)

    def consume_reset_ticket(
        self, principal_id: str, token: str, now: datetime
    ) -> Optional[Principal]:
        """Atomically redeem a stored reset ticket.

        The ticket is cleared whenever one is present, so a second redemption of
        the same value always fails. Returns the principal only when the ticket
        matched and was still live.
        """
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None or not principal.reset_token:
                return None
            matches = hmac.compare_digest(principal.reset_token, token)
            if not matches:
                return None
            live = (
                principal.reset_token_expires_at is not None
                and now < principal.reset_token_expires_at
            )
            principal.reset_token = None
            principal.reset_token_expires_at = None
            principal.updated_at = utcnow()
            return replace(principal) if live else None


class MemoryAuditLog:
    """Audit sink that keeps the most recent events in memory and mirrors them to the log."""

    def __init__(self, max_events: int = 10_000) -> None:
        self.logger = get_logger("crmauth.audit")
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record_user_activity(
        self,
        subject_id: str,
        activity: str,
        entity_type: str,
        entity_id: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            activity=activity,
            entity_type=entity_type,
            entity_id=entity_id,
            subject_id=subject_id,
        )
        with self._lock:
            self._events.append(event)
        self.logger.info(
            "audit_user_activity",
            activity=activity,
            entity_type=entity_type,
            entity_id=entity_id,
            subject_id=subject_id,
        )

    def record_system_activity(
        self, activity: str, entity_type: str, entity_id: Optional[str] = None
    ) -> None:
        event = AuditEvent(activity=activity, entity_type=entity_type, entity_id=entity_id)
        with self._lock:
            self._events.append(event)
        self.logger.info(
            "audit_system_activity",
            activity=activity,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    def events(self, activity: Optional[str] = None) -> List[AuditEvent]:
        with self._lock:
            snapshot = list(self._events)
        if activity is None:
            return snapshot
        return [event for event in snapshot if event.activity == activity]
