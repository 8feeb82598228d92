"""Refresh and reset token storage with a cache-first, identity-record-second policy.

The session cache (Redis or the in-process ``MemoryCache``) is authoritative
while it answers. When it raises ``CacheUnavailableError`` the value is kept on
a nullable field of the identity record instead, so logins and refreshes keep
working through a cache outage.
"""

from __future__ import annotations

from typing import Optional, Protocol

from zajel_auth.logging import get_logger
from zajel_auth.storage.errors import CacheUnavailableError

logger = get_logger(__name__)

REFRESH_NAMESPACE = "refreshToken"
RESET_NAMESPACE = "resetPassword"


class ExpiringStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


class IdentityFieldStore:
    """ExpiringStore over one nullable field of the identity record.

    Keys are identity ids. TTLs are not stored; the token's own ``exp``
    bounds how long a value is honoured.
    """

    def __init__(self, store, field: str) -> None:
        self.store = store
        self.field = field

    async def get(self, key: str) -> Optional[str]:
        identity = self.store.get_identity(key)
        if not identity:
            return None
        return getattr(identity, self.field)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.store.update_identity(key, **{self.field: value})

    async def delete(self, key: str) -> None:
        identity = self.store.get_identity(key)
        if identity and getattr(identity, self.field) is not None:
            self.store.update_identity(key, **{self.field: None})

    async def exists(self, key: str) -> bool:
        return (await self.get(key)) is not None


class PrimaryThenFallbackStore:
    """Write and read the primary store, switching to the fallback on cache errors."""

    def __init__(self, primary: ExpiringStore, fallback: ExpiringStore, namespace: str) -> None:
        self.primary = primary
        self.fallback = fallback
        self.namespace = namespace

    def _key(self, subject: str) -> str:
        return f"{self.namespace}:{subject}"

    async def set(self, subject: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.primary.set(self._key(subject), value, ttl_seconds)
        except CacheUnavailableError as exc:
            logger.warning(
                "session_cache_unavailable",
                namespace=self.namespace,
                operation="set",
                error=str(exc),
            )
            await self.fallback.set(subject, value, ttl_seconds)
            return
        # A stale fallback value must never compete with the primary
        try:
            await self.fallback.delete(subject)
        except Exception as exc:
            logger.warning(
                "session_fallback_clear_failed",
                namespace=self.namespace,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def get(self, subject: str) -> Optional[str]:
        try:
            return await self.primary.get(self._key(subject))
        except CacheUnavailableError as exc:
            logger.warning(
                "session_cache_unavailable",
                namespace=self.namespace,
                operation="get",
                error=str(exc),
            )
            return await self.fallback.get(subject)

    async def clear(self, subject: str) -> None:
        try:
            await self.primary.delete(self._key(subject))
        except CacheUnavailableError as exc:
            logger.warning(
                "session_cache_unavailable",
                namespace=self.namespace,
                operation="delete",
                error=str(exc),
            )
        await self.fallback.delete(subject)


class SessionCache:
    """Active refresh token and password reset token per identity."""

    def __init__(
        self,
        cache: ExpiringStore,
        store,
        *,
        refresh_ttl_seconds: int,
        reset_ttl_seconds: int,
    ) -> None:
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.reset_ttl_seconds = reset_ttl_seconds
        self.refresh = PrimaryThenFallbackStore(
            cache, IdentityFieldStore(store, "refresh_token"), REFRESH_NAMESPACE
        )
        self.reset = PrimaryThenFallbackStore(
            cache, IdentityFieldStore(store, "reset_token"), RESET_NAMESPACE
        )

    async def set_active_refresh_token(self, user_id: str, token: str) -> None:
        await self.refresh.set(user_id, token, self.refresh_ttl_seconds)

    async def get_active_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.refresh.get(user_id)

    async def clear_active_refresh_token(self, user_id: str) -> None:
        await self.refresh.clear(user_id)

    async def set_reset_token(self, user_id: str, token: str) -> None:
        await self.reset.set(user_id, token, self.reset_ttl_seconds)

    async def get_reset_token(self, user_id: str) -> Optional[str]:
        return await self.reset.get(user_id)

    async def clear_reset_token(self, user_id: str) -> None:
        await self.reset.clear(user_id)
