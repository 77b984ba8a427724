from __future__ import annotations

from enum import Enum
from typing import Optional, Protocol


class AuditActivity(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_ERROR = "LOGIN_ERROR"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET = "PASSWORD_RESET"
    USER_REGISTERED = "USER_REGISTERED"


ENTITY_USER = "USER"
ENTITY_AUTH = "AUTH"


class AuditLog(Protocol):
    def record_user_activity(
        self,
        subject_id: str,
        activity: str,
        entity_type: str,
        entity_id: Optional[str] = None,
    ) -> None: ...

    def record_system_activity(
        self, activity: str, entity_type: str, entity_id: Optional[str] = None
    ) -> None: ...
