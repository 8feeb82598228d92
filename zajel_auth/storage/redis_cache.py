from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from zajel_auth.storage.errors import CacheUnavailableError

# Connection refusals surface as OSError subclasses on some platforms
_CACHE_ERRORS = (RedisError, OSError)


def _unavailable(operation: str, exc: Exception) -> CacheUnavailableError:
    return CacheUnavailableError(
        f"redis {operation} failed: {type(exc).__name__}: {exc}", operation=operation
    )


class RedisCache:
    """Thin async Redis wrapper exposing the expiring key-value interface.

    Every client error (connection refused, timeout, server error) is raised as
    ``CacheUnavailableError`` so callers can switch to their fallback path
    without knowing about redis-py exception types.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
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

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except _CACHE_ERRORS as exc:
            raise _unavailable("get", exc) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        except _CACHE_ERRORS as exc:
            raise _unavailable("set", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except _CACHE_ERRORS as exc:
            raise _unavailable("delete", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except _CACHE_ERRORS as exc:
            raise _unavailable("exists", exc) from exc

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete a key."""
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.get(key)
            pipe.delete(key)
            value, _ = await pipe.execute()
            return value
        except _CACHE_ERRORS as exc:
            raise _unavailable("pop", exc) from exc

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest and TestClient, but exposes async methods so it can be
    awaited exactly like ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except _CACHE_ERRORS as exc:
            raise _unavailable("get", exc) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        except _CACHE_ERRORS as exc:
            raise _unavailable("set", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except _CACHE_ERRORS as exc:
            raise _unavailable("delete", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except _CACHE_ERRORS as exc:
            raise _unavailable("exists", exc) from exc

    async def pop(self, key: str) -> Optional[str]:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.get(key)
            pipe.delete(key)
            value, _ = pipe.execute()
            return value
        except _CACHE_ERRORS as exc:
            raise _unavailable("pop", exc) from exc

    async def close(self) -> None:
        self.client.close()
