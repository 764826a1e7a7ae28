from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from forkauth.config import Settings
from forkauth.logging import get_logger
from forkauth.service.tokens import TokenIssuer
from forkauth.storage.common import token_digest
from forkauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class BlacklistCache(Protocol):
    async def blacklist_token(self, digest: str, ttl_seconds: int) -> None: ...

    async def is_token_blacklisted(self, digest: str) -> bool: ...

    async def unblacklist_token(self, digest: str) -> None: ...


class LocalBlacklist:
    """Process-local blacklist keyed by token digest.

    Safe for concurrent add/check/evict from request threads and the event
    loop. Entries expire lazily on read and are evicted by a cancellable
    background sweep started with :meth:`start`.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, digest: str, ttl_seconds: float) -> None:
        deadline = self._clock() + max(1.0, float(ttl_seconds))
        with self._lock:
            # never shorten an existing entry
            current = self._entries.get(digest)
            if current is None or current < deadline:
                self._entries[digest] = deadline

    def contains(self, digest: str) -> bool:
        now = self._clock()
        with self._lock:
            deadline = self._entries.get(digest)
            if deadline is None:
                return False
            if deadline <= now:
                del self._entries[digest]
                return False
            return True

    def remove(self, digest: str) -> None:
        with self._lock:
            self._entries.pop(digest, None)

    def sweep(self) -> int:
        """Evict expired entries; returns how many were removed.

        The scan runs over a snapshot so readers only ever wait on one
        short critical section per evicted key.
        """
        now = self._clock()
        with self._lock:
            snapshot = list(self._entries.items())
        removed = 0
        for digest, deadline in snapshot:
            if deadline > now:
                continue
            with self._lock:
                # re-check: the entry may have been extended since the snapshot
                current = self._entries.get(digest)
                if current is not None and current <= now:
                    del self._entries[digest]
                    removed += 1
        return removed

    async def _run_sweeps(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval)
                try:
                    removed = self.sweep()
                except Exception as exc:  # pragma: no cover - sweep is best-effort
                    logger.warning("blacklist_sweep_failed", error=str(exc))
                    continue
                if removed:
                    logger.debug("blacklist_sweep", removed=removed)
        except asyncio.CancelledError:
            logger.info("blacklist_sweep_cancelled")
            raise

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop (idempotent)."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_sweeps())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


class RevocationStore:
    """Answers whether a token was explicitly invalidated before it expired.

    The shared cache is authoritative across nodes. Every ``add`` is also
    recorded in the local blacklist, and any cache failure or timeout falls
    back to that local view. During a cache outage this node still blocks
    tokens revoked on this node, but cannot see revocations made elsewhere.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        cache: Optional[BlacklistCache] = None,
        local: Optional[LocalBlacklist] = None,
    ) -> None:
        self.issuer = issuer
        self.cache = cache
        if local is None:
            local = LocalBlacklist(sweep_interval=settings.blacklist_sweep_interval_seconds)
        self.local = local
        self.cache_timeout = settings.cache_timeout_seconds
        self.default_ttl = settings.blacklist_default_ttl_seconds
        self.ttl_buffer = settings.blacklist_ttl_buffer_seconds
        self.max_ttl = int(issuer.max_ttl.total_seconds()) + self.ttl_buffer

    def ttl_for(self, token: str, ttl_seconds: Optional[int] = None) -> int:
        """Remaining token lifetime plus the buffer.

        The ``exp`` read here is unverified, so the result never exceeds the
        longest lifetime the issuer hands out.
        """
        expires_at = self.issuer.peek_expiry(token)
        if expires_at is not None:
            ttl = RedisCache.ttl_until(expires_at, buffer_seconds=self.ttl_buffer)
            return min(ttl, self.max_ttl)
        if ttl_seconds:
            return max(1, int(ttl_seconds))
        return self.default_ttl

    async def add(self, token: str, ttl_seconds: Optional[int] = None) -> int:
        digest = token_digest(token)
        ttl = self.ttl_for(token, ttl_seconds)
        self.local.add(digest, ttl)
        if self.cache is not None:
            try:
                await asyncio.wait_for(
                    self.cache.blacklist_token(digest, ttl), timeout=self.cache_timeout
                )
            except Exception as exc:
                logger.warning(
                    "blacklist_cache_write_failed",
                    error=str(exc) or type(exc).__name__,
                    fallback="local",
                )
        return ttl

    async def is_blacklisted(self, token: str) -> bool:
        digest = token_digest(token)
        if self.local.contains(digest):
            return True
        if self.cache is None:
            return False
        try:
            return await asyncio.wait_for(
                self.cache.is_token_blacklisted(digest), timeout=self.cache_timeout
            )
        except Exception as exc:
            # Local view already checked above; an unreachable cache is not a pass
            logger.warning(
                "blacklist_cache_read_failed",
                error=str(exc) or type(exc).__name__,
                fallback="local",
            )
            return self.local.contains(digest)

    async def remove(self, token: str) -> None:
        digest = token_digest(token)
        self.local.remove(digest)
        if self.cache is None:
            return
        try:
            await asyncio.wait_for(
                self.cache.unblacklist_token(digest), timeout=self.cache_timeout
            )
        except Exception as exc:
            logger.warning("blacklist_cache_delete_failed", error=str(exc) or type(exc).__name__)
