from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from crmauth.logging import get_logger
from crmauth.service.tokens import Clock, system_clock
from crmauth.storage.models import RevokedTokenEntry
from crmauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationRegistry:
    """Tokens that must be rejected even though they still verify.

    Entries are keyed by the sha256 digest of the token string and retained
    until the token's own expiry plus ``grace`` (the codec's skew tolerance),
    after which the token can no longer verify and the entry is redundant.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        default_retention: timedelta = timedelta(days=7),
        grace: timedelta = timedelta(seconds=30),
        clock: Optional[Clock] = None,
        prune_every: int = 256,
    ) -> None:
        self.cache = cache
        self.default_retention = default_retention
        self.grace = grace
        self._clock = clock or system_clock
        self._entries: Dict[str, RevokedTokenEntry] = {}
        self._lock = threading.Lock()
        self._prune_every = prune_every
        self._inserts_since_prune = 0

    def _retain_until(self, expires_at: Optional[datetime]) -> datetime:
        if expires_at is None:
            return self._clock() + self.default_retention
        return expires_at + self.grace

    async def revoke(self, token: str, expires_at: Optional[datetime] = None) -> bool:
        """Mark ``token`` revoked.

        Returns True only for the call that created the entry; repeat calls are
        no-ops returning False. Concurrent callers racing on the same token get
        exactly one True, which is what refresh rotation relies on.
        """
        digest = token_digest(token)
        retain_until = self._retain_until(expires_at)
        if self.cache:
            ttl = RedisCache.ttl_seconds(retain_until, self._clock())
            created = await self.cache.revoke_token(digest, ttl)
        else:
            created = self._insert(digest, retain_until)
        if created:
            logger.info("token_revoked", digest_prefix=digest[:12])
        return created

    async def is_revoked(self, token: str) -> bool:
        digest = token_digest(token)
        if self.cache:
            try:
                return await self.cache.is_token_revoked(digest)
            except Exception as exc:
                # Fail closed: an unreachable registry must not resurrect revoked tokens
                logger.warning(
                    "revocation_check_failed_defaulting_to_revoked",
                    digest_prefix=digest[:12],
                    error=str(exc),
                )
                return True
        now = self._clock()
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                return False
            if now >= entry.expires_at:
                del self._entries[digest]
                return False
            return True

    def prune_expired(self) -> int:
        """Remove in-memory entries whose tokens can no longer verify."""
        now = self._clock()
        with self._lock:
            return self._prune_locked(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _insert(self, digest: str, retain_until: datetime) -> bool:
        now = self._clock()
        with self._lock:
            existing = self._entries.get(digest)
            if existing is not None and now < existing.expires_at:
                return False
            self._entries[digest] = RevokedTokenEntry(digest=digest, expires_at=retain_until)
            self._inserts_since_prune += 1
            if self._inserts_since_prune >= self._prune_every:
                self._prune_locked(now)
            return True

    def _prune_locked(self, now: datetime) -> int:
        stale = [d for d, entry in self._entries.items() if now >= entry.expires_at]
        for digest in stale:
            del self._entries[digest]
        self._inserts_since_prune = 0
        if stale:
            logger.debug("revocation_registry_pruned", cleaned=len(stale))
        return len(stale)
