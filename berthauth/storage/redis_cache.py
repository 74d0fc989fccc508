from __future__ import annotations

import contextlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from berthauth.storage.errors import CacheUnavailableError


class RedisCache:
    """Thin Redis wrapper for token revocation and rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic fixed-window increment: the first hit sets the expiry, later hits
    # only count. A key that somehow lost its TTL gets it back.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if window and window > 0 then
  if count == 1 then
    redis.call('EXPIRE', KEYS[1], window)
  elseif redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], window)
  end
end
return {count, redis.call('TTL', KEYS[1])}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    @contextlib.contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except RedisError as exc:
            raise CacheUnavailableError(
                f"redis {operation} failed", detail={"error": str(exc)}
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        with self._guard("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str) -> None:
        with self._guard("set"):
            await self.client.set(key, value)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        # Redis rejects non-positive expiries
        with self._guard("set_with_expiry"):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> int:
        with self._guard("delete"):
            return int(await self.client.delete(key))

    async def exists(self, key: str) -> bool:
        with self._guard("exists"):
            return bool(await self.client.exists(key))

    async def increment(
        self, key: str, *, ttl_seconds: Optional[int] = None
    ) -> Tuple[int, int]:
        with self._guard("increment"):
            count, ttl = await self._increment(keys=[key], args=[int(ttl_seconds or 0)])
        return int(count), int(ttl)

    async def ttl(self, key: str) -> int:
        with self._guard("ttl"):
            return int(await self.client.ttl(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
