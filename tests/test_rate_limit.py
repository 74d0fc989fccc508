"""Tests for fixed-window rate limiting."""

from unittest.mock import AsyncMock

import pytest

from berthauth.config import Settings
from berthauth.service.errors import RateLimitedError
from berthauth.service.rate_limit import (
    RateLimitRule,
    RateLimiter,
    default_rules,
    normalize_client_id,
)
from berthauth.storage.errors import CacheUnavailableError
from berthauth.storage.memory import MemoryCache


@pytest.fixture
def limiter(clock):
    rules = {"login": RateLimitRule("login", limit=3, window_seconds=60)}
    return RateLimiter(MemoryCache(clock=clock), rules)


class TestNormalizeClientId:
    @pytest.mark.parametrize("value", ["::1", "::ffff:127.0.0.1", "127.0.0.1", "0:0:0:0:0:0:0:1"])
    def test_loopback_forms_collapse(self, value):
        assert normalize_client_id(value) == "127.0.0.1"

    def test_ipv4_mapped_address_unwrapped(self):
        assert normalize_client_id("::ffff:10.0.0.7") == "10.0.0.7"

    def test_ipv6_is_canonicalised(self):
        assert normalize_client_id("2001:DB8:0:0:0:0:0:1") == "2001:db8::1"

    def test_missing_client(self):
        assert normalize_client_id(None) == "unknown"
        assert normalize_client_id("  ") == "unknown"

    def test_non_ip_identifier_kept(self):
        assert normalize_client_id(" testclient ") == "testclient"


class TestRateLimiter:
    async def test_allows_up_to_limit_then_rejects(self, limiter):
        decisions = [await limiter.check("10.0.0.1", "login") for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        rejected = decisions[-1]
        assert 1 <= rejected.retry_after <= 60
        assert rejected.headers()["Retry-After"] == str(rejected.retry_after)

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(3):
            await limiter.check("10.0.0.1", "login")
        assert (await limiter.check("10.0.0.1", "login")).allowed is False

        clock.advance(61)
        assert (await limiter.check("10.0.0.1", "login")).allowed is True

    async def test_clients_are_counted_separately(self, limiter):
        for _ in range(3):
            await limiter.check("10.0.0.1", "login")
        assert (await limiter.check("10.0.0.2", "login")).allowed is True

    async def test_loopback_variants_share_a_bucket(self, limiter):
        await limiter.check("::1", "login")
        await limiter.check("127.0.0.1", "login")
        await limiter.check("::ffff:127.0.0.1", "login")
        assert (await limiter.check("::1", "login")).allowed is False

    async def test_key_does_not_contain_raw_client_id(self):
        key = RateLimiter.cache_key("login", "10.0.0.1")
        assert key.startswith("rate:login:")
        assert "10.0.0.1" not in key

    async def test_cache_failure_fails_open(self):
        cache = AsyncMock()
        cache.increment.side_effect = CacheUnavailableError("redis increment failed")
        limiter = RateLimiter(cache, {"login": RateLimitRule("login", 1, 60)})
        for _ in range(5):
            decision = await limiter.check("10.0.0.1", "login")
            assert decision.allowed
            assert decision.degraded

    async def test_enforce_raises_with_retry_after(self, limiter):
        for _ in range(3):
            await limiter.enforce("10.0.0.1", "login")
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("10.0.0.1", "login")
        assert excinfo.value.status_code == 429
        assert 1 <= excinfo.value.retry_after <= 60

    async def test_unknown_scope(self, limiter):
        with pytest.raises(KeyError):
            await limiter.check("10.0.0.1", "bogus")


def test_default_rules_from_settings():
    rules = default_rules(Settings())
    assert (rules["login"].limit, rules["login"].window_seconds) == (10, 900)
    assert (rules["register"].limit, rules["register"].window_seconds) == (5, 3600)
    assert (rules["refresh"].limit, rules["refresh"].window_seconds) == (30, 900)
    assert (rules["global"].limit, rules["global"].window_seconds) == (100, 900)
