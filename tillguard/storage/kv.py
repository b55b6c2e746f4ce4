from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Expiring key-value storage shared by the blacklist, CSRF map and limiter."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: int
    ) -> bool: ...

    async def sweep(self, prefix: str = "") -> int: ...


class MemoryKV:
    """In-process expiring map guarded by a lock.

    Entries are ``(value, expires_at_monotonic)``. Reads treat an expired entry
    as absent and drop it; ``sweep`` removes the rest in bulk.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _clock() -> float:
        return time.monotonic()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = max(int(ttl_seconds), 1)
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def incr(self, key: str, ttl_seconds: int) -> int:
        ttl = max(int(ttl_seconds), 1)
        with self._lock:
            now = self._clock()
            current = self._live(key, now)
            if current is None:
                self._data[key] = ("1", now + ttl)
                return 1
            _, expires_at = self._data[key]
            value = int(current) + 1
            self._data[key] = (str(value), expires_at)
            return value

    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: int
    ) -> bool:
        ttl = max(int(ttl_seconds), 1)
        with self._lock:
            now = self._clock()
            if self._live(key, now) != expected:
                return False
            self._data[key] = (new, now + ttl)
            return True

    async def sweep(self, prefix: str = "") -> int:
        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, (_, expires_at) in self._data.items()
                if key.startswith(prefix) and expires_at <= now
            ]
            for key in expired:
                del self._data[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


__all__ = ["KeyValueStore", "MemoryKV"]
