from __future__ import annotations

import hashlib
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from zajel_auth.logging import get_logger
from zajel_auth.storage.errors import CacheUnavailableError

logger = get_logger(__name__)

REVOKED_PREFIX = "revoked"


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationRegistry:
    """Self-expiring blacklist of tokens, keyed by their sha256 digest.

    Entries live in the session cache with a TTL matching the token's ``exp``
    and, when a credential store is attached, in its revoked-token table as
    well. A cache hit answers directly; otherwise the durable copy decides, so
    a token revoked before or during a cache outage stays revoked. Without a
    store, a process-local map covers outages; its entries are dropped lazily
    on lookup and swept on insert.
    """

    def __init__(
        self,
        cache,
        store=None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self._clock = clock or time.time
        self._local: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _key(self, token: str) -> str:
        return f"{REVOKED_PREFIX}:{_digest(token)}"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def add(self, token: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        expiry = expires_at.timestamp()
        remaining = int(expiry - self._clock())
        if remaining <= 0:
            return
        key = self._key(token)
        if self.store is not None:
            self.store.revoke_token(_digest(token), expires_at, now=self._now())
        try:
            await self.cache.set(key, "1", remaining)
            return
        except CacheUnavailableError as exc:
            logger.warning("revocation_cache_unavailable", operation="add", error=str(exc))
        with self._lock:
            self._sweep_locked()
            self._local[key] = expiry

    async def contains(self, token: str) -> bool:
        key = self._key(token)
        try:
            if await self.cache.exists(key):
                return True
        except CacheUnavailableError as exc:
            logger.warning(
                "revocation_cache_unavailable", operation="contains", error=str(exc)
            )
        if self._contains_local(key):
            return True
        if self.store is not None:
            return self.store.is_token_revoked(_digest(token), now=self._now())
        return False

    def _contains_local(self, key: str) -> bool:
        with self._lock:
            expiry = self._local.get(key)
            if expiry is None:
                return False
            if expiry <= self._clock():
                self._local.pop(key, None)
                return False
            return True

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [key for key, expiry in self._local.items() if expiry <= now]
        for key in expired:
            self._local.pop(key, None)
        return len(expired)
