from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from forkauth.config import Settings, get_settings, reset_settings_cache
from forkauth.logging import get_logger
from forkauth.service.auth import AuthService
from forkauth.service.authorization import Authorizer
from forkauth.service.blacklist import LocalBlacklist, RevocationStore
from forkauth.service.passwords import PasswordManager
from forkauth.service.service_accounts import ServiceCredentialManager
from forkauth.service.sessions import SessionManager
from forkauth.service.tokens import TokenIssuer
from forkauth.storage.memory import MemoryStore
from forkauth.storage.postgres import PostgresStore
from forkauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, timeout=self.settings.store_timeout_seconds
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.cache_timeout_seconds,
                key_prefix=self.settings.blacklist_key_prefix,
            )
            try:
                cache.verify_connection()
                logger.info(
                    "redis_connected", redis_url=_mask_url_password(self.settings.redis_url)
                )
            except Exception as exc:
                # The shared blacklist degrades per call; keep the client so it recovers
                logger.warning(
                    "redis_unreachable_at_startup",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    fallback="local_blacklist",
                )
            self.cache = cache
        else:
            logger.warning(
                "redis_disabled_fallback",
                message="REDIS_URL is empty; token revocations are visible to this process only",
            )

        self.issuer = TokenIssuer(self.settings)
        self.local_blacklist = LocalBlacklist(
            sweep_interval=self.settings.blacklist_sweep_interval_seconds
        )
        self.revocations = RevocationStore(
            self.issuer, self.settings, cache=self.cache, local=self.local_blacklist
        )
        self.passwords = PasswordManager(
            self.store,
            legacy_migration_deadline=self.settings.legacy_password_migration_deadline,
        )
        self.sessions = SessionManager(
            self.store,
            default_ttl=timedelta(days=self.settings.refresh_token_ttl_days),
            rotate=self.settings.rotate_refresh_tokens,
        )
        self.authorizer = Authorizer(self.store, self.issuer, self.revocations, self.settings)
        self.service_credentials = ServiceCredentialManager(
            self.store, self.issuer, self.passwords
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            issuer=self.issuer,
            revocations=self.revocations,
            sessions=self.sessions,
            passwords=self.passwords,
            authorizer=self.authorizer,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            resolve_permissions_at_request=self.settings.resolve_permissions_at_request,
        )

    async def start(self) -> None:
        self.local_blacklist.start()

    async def close(self) -> None:
        await self.local_blacklist.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(previous.cache.close())
            except RuntimeError:
                asyncio.run(previous.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
