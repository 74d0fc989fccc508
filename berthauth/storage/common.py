from __future__ import annotations

import hashlib
from typing import Optional, Protocol, Tuple


class SharedCache(Protocol):
    """Cache shared by every replica; used by revocation and rate limiting.

    TTL semantics follow Redis: ``ttl`` returns -2 for a missing key and -1 for
    a key without expiry.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def increment(
        self, key: str, *, ttl_seconds: Optional[int] = None
    ) -> Tuple[int, int]: ...

    async def ttl(self, key: str) -> int: ...

    async def close(self) -> None: ...


def digest_key(prefix: str, value: str) -> str:
    """Build a cache key from a hashed component.

    Hashing keeps raw tokens out of the keyspace and avoids delimiter
    injection from client-controlled identifiers.
    """
    digest = hashlib.sha256(value.encode()).hexdigest()
    return f"{prefix}:{digest}"


__all__ = ["SharedCache", "digest_key"]
