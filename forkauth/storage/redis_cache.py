from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the shared token blacklist.

    Keys are written with a per-key expiry so entries disappear on their own
    once the blacklisted token could no longer verify anyway.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        key_prefix: str = "bl_",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_until(expires_at: datetime, *, buffer_seconds: int = 0) -> int:
        """Seconds from now until ``expires_at`` plus ``buffer_seconds``, at least 1.

        Redis rejects zero or negative expiries, so already-expired inputs clamp to 1.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(remaining) + buffer_seconds)

    def _key(self, digest: str) -> str:
        return f"{self.key_prefix}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on the shared blacklist."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_token(self, digest: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(digest), "1", ex=max(1, int(ttl_seconds)))

    async def is_token_blacklisted(self, digest: str) -> bool:
        return bool(await self.client.exists(self._key(digest)))

    async def unblacklist_token(self, digest: str) -> None:
        await self.client.delete(self._key(digest))

    async def close(self) -> None:
        """Close the connection pool on shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
