from __future__ import annotations

import threading
from datetime import timedelta
from typing import Dict, Optional

from crmauth.logging import fingerprint, get_logger
from crmauth.service.tokens import Clock, system_clock
from crmauth.storage.models import AttemptCounter
from crmauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class LoginAttemptTracker:
    """Counts failed logins per source within a fixed window.

    A source is blocked once it reaches ``max_attempts`` failures and stays
    blocked until the window that started with its first failure elapses.
    Redis holds the counters when configured so every worker shares them;
    otherwise a lock-guarded dict is used.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        fail_open: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.cache = cache
        self.max_attempts = max_attempts
        self.window = window
        self.fail_open = fail_open
        self._clock = clock or system_clock
        self._counters: Dict[str, AttemptCounter] = {}
        self._lock = threading.Lock()

    async def is_blocked(self, source: str) -> bool:
        if self.cache:
            try:
                failures = await self.cache.get_login_failures(source)
            except Exception as exc:
                logger.warning(
                    "login_attempts_unavailable",
                    operation="is_blocked",
                    source_hash=fingerprint(source),
                    fail_open=self.fail_open,
                    error=str(exc),
                )
                return not self.fail_open
            return failures >= self.max_attempts

        now = self._clock()
        with self._lock:
            counter = self._counters.get(source)
            if counter is None:
                return False
            if now >= counter.window_expires_at(self.window):
                del self._counters[source]
                return False
            return counter.failures >= self.max_attempts

    async def record_failure(self, source: str) -> None:
        if self.cache:
            try:
                failures = await self.cache.record_login_failure(
                    source, int(self.window.total_seconds())
                )
            except Exception as exc:
                logger.warning(
                    "login_attempts_unavailable",
                    operation="record_failure",
                    source_hash=fingerprint(source),
                    error=str(exc),
                )
                return
        else:
            failures = self._increment(source)
        if failures == self.max_attempts:
            logger.warning(
                "login_source_locked_out",
                source_hash=fingerprint(source),
                failures=failures,
                window_seconds=int(self.window.total_seconds()),
            )

    async def record_success(self, source: str) -> None:
        if self.cache:
            try:
                await self.cache.clear_login_failures(source)
            except Exception as exc:
                logger.warning(
                    "login_attempts_unavailable",
                    operation="record_success",
                    source_hash=fingerprint(source),
                    error=str(exc),
                )
            return
        with self._lock:
            self._counters.pop(source, None)

    def failures(self, source: str) -> int:
        """Current in-memory failure count for ``source`` (0 when none or elapsed)."""
        now = self._clock()
        with self._lock:
            counter = self._counters.get(source)
            if counter is None or now >= counter.window_expires_at(self.window):
                return 0
            return counter.failures

    def cleanup_expired(self) -> int:
        """Drop in-memory counters whose window has elapsed."""
        now = self._clock()
        with self._lock:
            stale = [
                source
                for source, counter in self._counters.items()
                if now >= counter.window_expires_at(self.window)
            ]
            for source in stale:
                del self._counters[source]
        if stale:
            logger.debug("login_attempts_cleanup", cleaned=len(stale))
        return len(stale)

    def _increment(self, source: str) -> int:
        now = self._clock()
        with self._lock:
            counter = self._counters.get(source)
            if counter is None or now >= counter.window_expires_at(self.window):
                counter = AttemptCounter(source=source, failures=0, window_started_at=now)
                self._counters[source] = counter
            counter.failures += 1
            return counter.failures
