"""Tests for the token denylist."""

import time
from unittest.mock import AsyncMock

import pytest

from berthauth.service.revocation import RevocationStore
from berthauth.service.tokens import TokenIssuer
from berthauth.storage.errors import CacheUnavailableError
from berthauth.storage.memory import MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def revocations(cache):
    return RevocationStore(cache)


@pytest.fixture
def token(key_store, claims):
    return TokenIssuer(key_store).issue_access_token(claims)


async def test_revoked_token_is_reported(revocations, token):
    assert await revocations.is_revoked(token) is False
    assert await revocations.revoke(token) is True
    assert await revocations.is_revoked(token) is True


async def test_entry_lives_for_remaining_token_lifetime(revocations, cache, token, clock):
    await revocations.revoke(token)
    ttl = await cache.ttl(RevocationStore.cache_key(token))
    assert 3590 <= ttl <= 3600

    clock.advance(3601)
    assert await revocations.is_revoked(token) is False


async def test_key_is_a_hash_not_the_token(revocations, cache, token):
    await revocations.revoke(token)
    key = RevocationStore.cache_key(token)
    assert key.startswith("auth:revoked:")
    assert token not in key
    assert await cache.get(key) == "1"


async def test_explicit_ttl_has_one_second_floor(revocations, cache, token):
    await revocations.revoke(token, ttl_seconds=0)
    assert await cache.ttl(RevocationStore.cache_key(token)) == 1


async def test_expired_token_needs_no_entry(revocations, cache, key_store, claims):
    expired = TokenIssuer(key_store, clock=lambda: time.time() - 7200).issue_access_token(claims)
    assert await revocations.revoke(expired) is False
    assert await cache.exists(RevocationStore.cache_key(expired)) is False


async def test_unreadable_token_uses_default_ttl(cache):
    revocations = RevocationStore(cache, default_ttl_seconds=120)
    await revocations.revoke("opaque-token")
    assert await cache.ttl(RevocationStore.cache_key("opaque-token")) == 120


async def test_lookup_fails_closed(token):
    cache = AsyncMock()
    cache.exists.side_effect = CacheUnavailableError("redis exists failed")
    revocations = RevocationStore(cache)
    assert await revocations.is_revoked(token) is True


async def test_revoke_propagates_cache_errors(token):
    cache = AsyncMock()
    cache.set_with_expiry.side_effect = CacheUnavailableError("redis set failed")
    revocations = RevocationStore(cache)
    with pytest.raises(CacheUnavailableError):
        await revocations.revoke(token)


async def test_consume_succeeds_once(revocations, token):
    assert await revocations.consume(token) is True
    assert await revocations.consume(token) is False
    assert await revocations.is_revoked(token) is True


async def test_entry_covers_leeway_and_partial_seconds(key_store, claims, clock, cache):
    clock.now = 1_700_000_000.5
    token = TokenIssuer(key_store, access_ttl_seconds=60, clock=clock).issue_access_token(claims)
    revocations = RevocationStore(cache, leeway_seconds=30, clock=clock)

    assert await revocations.revoke(token) is True
    assert await cache.ttl(RevocationStore.cache_key(token)) == 90

    clock.advance(89)
    assert await revocations.is_revoked(token) is True
    clock.advance(1)
    assert await revocations.is_revoked(token) is False


async def test_token_inside_leeway_can_still_be_revoked(key_store, claims, clock, cache):
    token = TokenIssuer(key_store, access_ttl_seconds=60, clock=clock).issue_access_token(claims)
    clock.advance(70)
    revocations = RevocationStore(cache, leeway_seconds=30, clock=clock)
    assert await revocations.revoke(token) is True
    assert await revocations.is_revoked(token) is True
