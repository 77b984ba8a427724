from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from crmauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without Redis.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("crmauth", "JWT_ISSUER")
    jwt_audience: str = env_field("crm-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    reset_token_ttl_minutes: int = env_field(24 * 60, "RESET_TOKEN_TTL_MINUTES", gt=0)
    token_clock_skew_seconds: int = env_field(
        30,
        "TOKEN_CLOCK_SKEW_SECONDS",
        ge=0,
        description="Tolerance applied to exp/iat checks for clock drift between nodes",
    )

    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", gt=0)
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", gt=0)
    login_attempts_fail_open: bool = env_field(
        True,
        "LOGIN_ATTEMPTS_FAIL_OPEN",
        description="Treat sources as unblocked when attempt storage is unavailable",
    )
    lockout_status_code: int = env_field(
        401,
        "LOCKOUT_STATUS_CODE",
        description="HTTP status returned while a source is locked out (401 or 429)",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key throttling on the first X-Forwarded-For hop; enable only behind a trusted proxy",
    )

    bootstrap_admin_username: str | None = env_field(None, "BOOTSTRAP_ADMIN_USERNAME")
    bootstrap_admin_email: str | None = env_field(None, "BOOTSTRAP_ADMIN_EMAIL")
    bootstrap_admin_password: str | None = env_field(None, "BOOTSTRAP_ADMIN_PASSWORD")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("lockout_status_code")
    @classmethod
    def _validate_lockout_status(cls, value: int) -> int:
        if value not in (401, 429):
            raise ValueError("lockout_status_code must be 401 or 429")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", message="set JWT_SECRET to keep tokens valid across restarts")
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
