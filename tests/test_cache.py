"""Tests for the in-process cache and the Redis wrapper's error mapping."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from berthauth.storage.common import digest_key
from berthauth.storage.errors import CacheUnavailableError
from berthauth.storage.memory import MemoryCache
from berthauth.storage.redis_cache import RedisCache


class TestMemoryCache:
    async def test_get_set_delete(self):
        cache = MemoryCache()
        assert await cache.get("k") is None
        await cache.set("k", "v")
        assert await cache.get("k") == "v"
        assert await cache.ttl("k") == -1
        assert await cache.delete("k") == 1
        assert await cache.delete("k") == 0
        assert await cache.ttl("k") == -2

    async def test_expiry(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set_with_expiry("k", "v", 10)
        assert await cache.exists("k")
        assert await cache.ttl("k") == 10
        clock.advance(9.5)
        assert await cache.ttl("k") == 1
        clock.advance(0.5)
        assert await cache.exists("k") is False
        assert await cache.get("k") is None

    async def test_increment_sets_window_on_first_hit(self, clock):
        cache = MemoryCache(clock=clock)
        assert await cache.increment("c", ttl_seconds=30) == (1, 30)
        clock.advance(10)
        assert await cache.increment("c", ttl_seconds=30) == (2, 20)
        clock.advance(21)
        assert await cache.increment("c", ttl_seconds=30) == (1, 30)

    async def test_increment_without_ttl(self):
        cache = MemoryCache()
        assert await cache.increment("c") == (1, -1)
        assert await cache.increment("c") == (2, -1)

    async def test_close_clears_entries(self):
        cache = MemoryCache()
        await cache.set("k", "v")
        await cache.close()
        assert await cache.get("k") is None


class TestRedisCache:
    @pytest.fixture
    def cache(self):
        # No connection is made until a command runs
        return RedisCache("redis://localhost:6399/0")

    async def test_errors_become_cache_unavailable(self, cache):
        cache.client.exists = AsyncMock(side_effect=RedisConnectionError("refused"))
        with pytest.raises(CacheUnavailableError) as excinfo:
            await cache.exists("k")
        assert "exists" in excinfo.value.message

    async def test_increment_returns_count_and_ttl(self, cache):
        cache._increment = AsyncMock(return_value=[3, 42])
        assert await cache.increment("c", ttl_seconds=60) == (3, 42)
        cache._increment.assert_awaited_once_with(keys=["c"], args=[60])

    async def test_increment_error(self, cache):
        cache._increment = AsyncMock(side_effect=RedisConnectionError("refused"))
        with pytest.raises(CacheUnavailableError):
            await cache.increment("c", ttl_seconds=60)

    async def test_set_with_expiry_floors_ttl(self, cache):
        cache.client.set = AsyncMock(return_value=True)
        await cache.set_with_expiry("k", "1", 0)
        cache.client.set.assert_awaited_once_with("k", "1", ex=1)


def test_digest_key():
    key = digest_key("auth:revoked", "secret-token")
    prefix, digest = key.rsplit(":", 1)
    assert prefix == "auth:revoked"
    assert len(digest) == 64
    assert "secret-token" not in key
