from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from berthauth.config import Settings
from berthauth.logging import get_logger
from berthauth.service.errors import RateLimitedError
from berthauth.storage.common import SharedCache, digest_key

logger = get_logger(__name__)

LOOPBACK_CLIENT_ID = "127.0.0.1"
UNKNOWN_CLIENT_ID = "unknown"


@dataclass(frozen=True)
class RateLimitRule:
    scope: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    retry_after: Optional[int] = None
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def normalize_client_id(client_id: Optional[str]) -> str:
    """Canonical form of a client address; every loopback form is 127.0.0.1."""
    if not client_id or not client_id.strip():
        return UNKNOWN_CLIENT_ID
    raw = client_id.strip()
    try:
        address = ipaddress.ip_address(raw)
    except ValueError:
        return raw
    if address.version == 6 and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if address.is_loopback:
        return LOOPBACK_CLIENT_ID
    return str(address)


def default_rules(settings: Settings) -> Dict[str, RateLimitRule]:
    return {
        "login": RateLimitRule(
            "login", settings.login_rate_limit, settings.login_rate_limit_window_seconds
        ),
        "register": RateLimitRule(
            "register", settings.register_rate_limit, settings.register_rate_limit_window_seconds
        ),
        "refresh": RateLimitRule(
            "refresh", settings.refresh_rate_limit, settings.refresh_rate_limit_window_seconds
        ),
        "global": RateLimitRule(
            "global", settings.global_rate_limit, settings.global_rate_limit_window_seconds
        ),
    }


class RateLimiter:
    """Fixed-window counters per (client, scope) in the shared cache.

    The cache increments and sets the window expiry in one atomic step, so
    concurrent requests on any replica share one count. If the cache is
    unreachable requests are let through: losing throttling for a while is
    preferable to locking every user out.
    """

    def __init__(self, cache: SharedCache, rules: Mapping[str, RateLimitRule]) -> None:
        self.cache = cache
        self.rules = dict(rules)

    @classmethod
    def from_settings(cls, cache: SharedCache, settings: Settings) -> "RateLimiter":
        return cls(cache, default_rules(settings))

    def rule(self, scope: str) -> RateLimitRule:
        try:
            return self.rules[scope]
        except KeyError:
            raise KeyError(f"no rate limit rule for scope '{scope}'") from None

    @staticmethod
    def cache_key(scope: str, client_id: str) -> str:
        return digest_key(f"rate:{scope}", normalize_client_id(client_id))

    async def check(self, client_id: Optional[str], scope: str) -> RateLimitDecision:
        rule = self.rule(scope)
        if rule.limit <= 0:
            return RateLimitDecision(
                allowed=True, limit=rule.limit, remaining=0, reset_seconds=0
            )
        key = self.cache_key(scope, client_id or "")
        try:
            count, ttl = await self.cache.increment(key, ttl_seconds=rule.window_seconds)
        except Exception as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                scope=scope,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitDecision(
                allowed=True,
                limit=rule.limit,
                remaining=rule.limit,
                reset_seconds=rule.window_seconds,
                degraded=True,
            )

        reset_seconds = ttl if ttl > 0 else rule.window_seconds
        if count > rule.limit:
            retry_after = max(1, reset_seconds)
            logger.warning(
                "rate_limit_exceeded",
                scope=scope,
                client_id=normalize_client_id(client_id),
                count=count,
                limit=rule.limit,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                remaining=0,
                reset_seconds=reset_seconds,
                retry_after=retry_after,
            )
        return RateLimitDecision(
            allowed=True,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_seconds=reset_seconds,
        )

    async def enforce(self, client_id: Optional[str], scope: str) -> RateLimitDecision:
        decision = await self.check(client_id, scope)
        if not decision.allowed:
            raise RateLimitedError(
                "Too many requests, please try again later.",
                retry_after=decision.retry_after or 1,
            )
        return decision


__all__ = [
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
    "default_rules",
    "normalize_client_id",
]
