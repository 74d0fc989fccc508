from __future__ import annotations

import math
import time
from typing import Callable, Optional

from berthauth.config import REFRESH_TOKEN_TTL_SECONDS
from berthauth.logging import get_logger
from berthauth.service.verifier import decode_unverified
from berthauth.storage.common import SharedCache, digest_key

logger = get_logger(__name__)

REVOKED_PREFIX = "auth:revoked"


class RevocationStore:
    """Denylist of individual tokens, shared by every replica.

    Entries are keyed by the SHA-256 of the token and live as long as the
    verifier would still accept it, leeway included. Lookups fail closed: if
    the cache cannot answer, the token is treated as revoked.
    """

    def __init__(
        self,
        cache: SharedCache,
        *,
        default_ttl_seconds: int = REFRESH_TOKEN_TTL_SECONDS,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def cache_key(token: str) -> str:
        return digest_key(REVOKED_PREFIX, token)

    def remaining_lifetime(self, token: str) -> Optional[int]:
        """Seconds until the token expires; None when ``exp`` cannot be read."""
        payload = decode_unverified(token)
        exp = payload.get("exp") if payload else None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return math.ceil(exp - self._clock())

    def _entry_ttl(self, token: str, ttl_seconds: Optional[int]) -> Optional[int]:
        if ttl_seconds is not None:
            return max(1, int(ttl_seconds))
        remaining = self.remaining_lifetime(token)
        if remaining is None:
            return self.default_ttl_seconds
        # Verification accepts tokens up to leeway_seconds past exp
        ttl = remaining + self.leeway_seconds
        if ttl <= 0:
            return None
        return ttl

    async def revoke(self, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Record a revocation; returns False when the token can no longer verify.

        Cache failures propagate: a logout that silently did not revoke would
        leave the token usable.
        """
        ttl = self._entry_ttl(token, ttl_seconds)
        if ttl is None:
            logger.debug("revocation_skipped_expired_token")
            return False
        await self.cache.set_with_expiry(self.cache_key(token), "1", ttl)
        logger.info("token_revoked", ttl_seconds=ttl)
        return True

    async def consume(self, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Revoke atomically and report whether this call was the first to do so.

        Used for single-use refresh tokens: two concurrent refreshes with the
        same token cannot both see True.
        """
        ttl = self._entry_ttl(token, ttl_seconds)
        if ttl is None:
            return False
        count, _ = await self.cache.increment(self.cache_key(token), ttl_seconds=ttl)
        return count == 1

    async def is_revoked(self, token: str) -> bool:
        try:
            return await self.cache.exists(self.cache_key(token))
        except Exception as exc:
            logger.error(
                "revocation_check_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True


__all__ = ["REVOKED_PREFIX", "RevocationStore"]
