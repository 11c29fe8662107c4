from __future__ import annotations

import contextlib
import json
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from intranet_auth.logging import get_logger
from intranet_auth.storage.errors import StorageUnavailable
from intranet_auth.storage.models import Session

logger = get_logger(__name__)

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError)


def _session_key(session_id: str) -> str:
    return f"auth:session:{session_id}"


def _user_sessions_key(user_id: str) -> str:
    return f"auth:user_sessions:{user_id}"


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _UNAVAILABLE as exc:
        logger.error("redis_unavailable", operation=operation, error=str(exc))
        raise StorageUnavailable("session store", "redis unreachable") from exc


def _decode(raw: Optional[str], session_id: str) -> Optional[Session]:
    if not raw:
        return None
    try:
        return Session.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning("session_payload_corrupt", session_id=session_id, error=str(exc))
        return None


class RedisSessionStore:
    """Session store backed by Redis, shared by all app workers."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save(self, session: Session, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        with _translate_errors("save"):
            pipe = self.client.pipeline()
            pipe.set(_session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
            # Track session in user's session set for bulk revocation
            pipe.sadd(_user_sessions_key(session.user_id), session.id)
            pipe.expire(_user_sessions_key(session.user_id), ttl)
            await pipe.execute()

    async def get(self, session_id: str) -> Optional[Session]:
        with _translate_errors("get"):
            raw = await self.client.get(_session_key(session_id))
        return _decode(raw, session_id)

    async def delete(self, session_id: str) -> None:
        with _translate_errors("delete"):
            raw = await self.client.get(_session_key(session_id))
            session = _decode(raw, session_id)
            pipe = self.client.pipeline()
            pipe.delete(_session_key(session_id))
            if session:
                pipe.srem(_user_sessions_key(session.user_id), session_id)
            await pipe.execute()

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke all sessions for a user.

        Args:
            user_id: User whose sessions to revoke
            except_session_id: Optional session ID to keep active

        Returns:
            Number of sessions revoked
        """
        user_sessions_key = _user_sessions_key(user_id)
        with _translate_errors("delete_user_sessions"):
            session_ids = await self.client.smembers(user_sessions_key)
            if not session_ids:
                return 0
            revoked = 0
            pipe = self.client.pipeline()
            for session_id in session_ids:
                if except_session_id and session_id == except_session_id:
                    continue
                pipe.delete(_session_key(session_id))
                pipe.srem(user_sessions_key, session_id)
                revoked += 1
            await pipe.execute()
        return revoked

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisSessionStore:
    """Synchronous Redis session store for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues when each test runs under its own ``asyncio.run``, but exposes the
    same async methods as ``RedisSessionStore``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisSessionStore.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def save(self, session: Session, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        with _translate_errors("save"):
            pipe = self.client.pipeline()
            pipe.set(_session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
            pipe.sadd(_user_sessions_key(session.user_id), session.id)
            pipe.expire(_user_sessions_key(session.user_id), ttl)
            pipe.execute()

    async def get(self, session_id: str) -> Optional[Session]:
        with _translate_errors("get"):
            raw = self.client.get(_session_key(session_id))
        return _decode(raw, session_id)

    async def delete(self, session_id: str) -> None:
        with _translate_errors("delete"):
            session = _decode(self.client.get(_session_key(session_id)), session_id)
            pipe = self.client.pipeline()
            pipe.delete(_session_key(session_id))
            if session:
                pipe.srem(_user_sessions_key(session.user_id), session_id)
            pipe.execute()

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        user_sessions_key = _user_sessions_key(user_id)
        with _translate_errors("delete_user_sessions"):
            session_ids = self.client.smembers(user_sessions_key)
            revoked = 0
            pipe = self.client.pipeline()
            for session_id in session_ids or ():
                if except_session_id and session_id == except_session_id:
                    continue
                pipe.delete(_session_key(session_id))
                pipe.srem(user_sessions_key, session_id)
                revoked += 1
            pipe.execute()
        return revoked

    async def close(self) -> None:
        self.client.close()
