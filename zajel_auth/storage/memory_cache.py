from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """In-process expiring key-value store with the same interface as RedisCache.

    Used when Redis is not configured under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV. State is per process, so it is not suitable for
    multi-worker deployments.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
