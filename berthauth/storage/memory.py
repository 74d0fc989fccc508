from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """In-process stand-in for the shared cache.

    Only valid for a single process (tests and local development): a
    revocation recorded here is invisible to other replicas.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, absolute expiry or None)
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries[key] = (value, None)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def increment(
        self, key: str, *, ttl_seconds: Optional[int] = None
    ) -> Tuple[int, int]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                expires_at = (
                    self._clock() + max(1, int(ttl_seconds)) if ttl_seconds else None
                )
                self._entries[key] = ("1", expires_at)
                return 1, self._remaining(expires_at)
            value, expires_at = entry
            count = int(value) + 1
            if expires_at is None and ttl_seconds:
                expires_at = self._clock() + max(1, int(ttl_seconds))
            self._entries[key] = (str(count), expires_at)
            return count, self._remaining(expires_at)

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return -2
            return self._remaining(entry[1])

    def _remaining(self, expires_at: Optional[float]) -> int:
        if expires_at is None:
            return -1
        # Round up so a live key never reports 0
        remaining = expires_at - self._clock()
        whole = int(remaining)
        return max(1, whole if whole == remaining else whole + 1)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
