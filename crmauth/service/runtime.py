from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from crmauth.config import get_settings, reset_settings_cache
from crmauth.logging import get_logger
from crmauth.service.auth import AuthService
from crmauth.service.login_attempts import LoginAttemptTracker
from crmauth.service.revocation import RevocationRegistry
from crmauth.service.tokens import TokenCodec
from crmauth.storage.memory import MemoryAuditLog, MemoryStore
from crmauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore()
        self.audit = MemoryAuditLog()

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared login attempt counters and token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login attempt counters and "
                    "revocations are local to this process."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec.from_settings(self.settings)
        self.attempts = LoginAttemptTracker(
            self.cache,
            max_attempts=self.settings.login_max_attempts,
            window=timedelta(minutes=self.settings.login_lockout_minutes),
            fail_open=self.settings.login_attempts_fail_open,
            clock=self.codec.now,
        )
        self.revocations = RevocationRegistry(
            self.cache,
            default_retention=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            grace=self.codec.clock_skew,
            clock=self.codec.now,
        )
        self.auth = AuthService(
            self.store,
            self.audit,
            self.settings,
            codec=self.codec,
            attempts=self.attempts,
            revocations=self.revocations,
        )
        self.auth.ensure_bootstrap_admin()
        logger.info("runtime_init_complete", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                # Called from inside a running loop; the pool is dropped with the runtime
                logger.debug("runtime_cache_close_skipped", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
