from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from intranet_auth.config import SessionBackend, get_settings, reset_settings_cache
from intranet_auth.logging import get_logger
from intranet_auth.service.audit import AuditLog
from intranet_auth.service.auth import AuthService
from intranet_auth.service.invitations import InvitationService
from intranet_auth.service.rate_limit import RateLimiter
from intranet_auth.service.sessions import SessionManager
from intranet_auth.storage.memory import (
    MemoryContentStore,
    MemoryIdentityStore,
    MemorySessionStore,
)
from intranet_auth.storage.postgres import PostgresContentStore, PostgresIdentityStore
from intranet_auth.storage.redis_cache import RedisSessionStore, SyncRedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of ``url`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            session_backend=self.settings.session_backend.value,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.identity = MemoryIdentityStore(
                    totp_encryption_key=self.settings.totp_encryption_key
                )
                self.content = MemoryContentStore()
            else:
                self.identity = PostgresIdentityStore(
                    self.settings.identity_database_url,
                    totp_encryption_key=self.settings.totp_encryption_key,
                )
                self.content = PostgresContentStore(self.settings.content_database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.session_store = self._build_session_store()
        self.sessions = SessionManager(self.session_store, self.identity, self.settings)
        self.rate_limiter = RateLimiter(self.identity, self.settings)
        self.audit = AuditLog(self.content, self.identity)
        self.invitations = InvitationService(self.identity, self.audit, self.settings)
        self.auth = AuthService(
            self.identity, self.sessions, self.rate_limiter, self.audit, self.settings
        )

    def _build_session_store(self):
        if self.settings.session_backend == SessionBackend.MEMORY:
            logger.info("runtime_session_store_initialized", backend="memory")
            return MemorySessionStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to one event loop
                if self.settings.test_mode:
                    store = SyncRedisSessionStore(self.settings.redis_url)
                else:
                    store = RedisSessionStore(self.settings.redis_url)
                store.verify_connection()
                logger.info("runtime_session_store_initialized", backend="redis")
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions; start Redis, set SESSION_BACKEND=memory, "
                "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; sessions are process-local.",
            mode=fallback_mode,
        )
        return MemorySessionStore()

    async def close(self) -> None:
        if isinstance(self.session_store, (RedisSessionStore, SyncRedisSessionStore)):
            await self.session_store.close()
        for store in (self.identity, self.content):
            if isinstance(store, (PostgresIdentityStore, PostgresContentStore)):
                store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads from building it.
    """
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
        if runtime is not None:
            store = runtime.session_store
            if isinstance(store, SyncRedisSessionStore):
                store.client.close()
            elif isinstance(store, RedisSessionStore):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(store.close())
                except RuntimeError:
                    asyncio.run(store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
