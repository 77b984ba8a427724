from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login attempt counters and revoked tokens."""

    # Increment and start the window TTL in one step so a crash between the two
    # commands can never leave a counter without an expiry.
    _ATTEMPT_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
elseif redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_script = self.client.register_script(self._ATTEMPT_SCRIPT)

    @staticmethod
    def ttl_seconds(expires_at: datetime, now: datetime | None = None) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - current).total_seconds()))

    @staticmethod
    def _hashed(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def record_login_failure(self, source: str, window_seconds: int) -> int:
        key = f"auth:attempts:{self._hashed(source)}"
        result = await self._attempt_script(keys=[key], args=[window_seconds])
        return int(result)

    async def get_login_failures(self, source: str) -> int:
        raw = await self.client.get(f"auth:attempts:{self._hashed(source)}")
        return int(raw) if raw else 0

    async def clear_login_failures(self, source: str) -> None:
        await self.client.delete(f"auth:attempts:{self._hashed(source)}")

    async def revoke_token(self, digest: str, ttl_seconds: int) -> bool:
        """Insert a revocation marker; True only for the caller that created it."""
        created = await self.client.set(
            f"auth:revoked:{digest}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(created)

    async def is_token_revoked(self, digest: str) -> bool:
        return bool(await self.client.exists(f"auth:revoked:{digest}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting the runtime."""
        await self.client.aclose()
