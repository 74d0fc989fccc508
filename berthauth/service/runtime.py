from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from berthauth.config import Settings, get_settings, reset_settings_cache
from berthauth.logging import get_logger
from berthauth.service.auth import AuthService
from berthauth.service.errors import ConfigurationError
from berthauth.service.keystore import KeyStore
from berthauth.service.rate_limit import RateLimiter
from berthauth.service.revocation import RevocationStore
from berthauth.service.secrets import AwsSecretsManagerSource, SecretSource
from berthauth.service.tokens import TokenIssuer
from berthauth.service.verifier import TokenVerifier
from berthauth.storage.common import SharedCache
from berthauth.storage.memory import MemoryCache
from berthauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_cache(settings: Settings) -> SharedCache:
    if settings.use_memory_cache:
        logger.info("runtime_cache_initialized", cache_type="memory")
        return MemoryCache()

    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            logger.info("runtime_cache_initialized", cache_type="redis")
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise ConfigurationError(
            "Redis is required for token revocation and rate limits; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; revocations and rate limits "
            "are local to this process."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds the service singletons for the FastAPI app.

    Construction is synchronous and cheap; key material is loaded by
    ``start()``, which the app lifespan awaits before serving traffic.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[SharedCache] = None,
        secret_source: Optional[SecretSource] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
            secret_configured=bool(self.settings.jwt_keys_secret_arn),
        )
        self.cache: SharedCache = cache if cache is not None else _build_cache(self.settings)
        self._secret_source = secret_source
        self._start_lock = asyncio.Lock()
        self.key_store: Optional[KeyStore] = None
        self.issuer: Optional[TokenIssuer] = None
        self.verifier: Optional[TokenVerifier] = None
        self.revocations = RevocationStore(
            self.cache,
            default_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
        )
        self.rate_limiter = RateLimiter.from_settings(self.cache, self.settings)
        self.auth: Optional[AuthService] = None

    @property
    def started(self) -> bool:
        return self.auth is not None

    async def _load_key_store(self) -> KeyStore:
        settings = self.settings
        if settings.jwt_keys_secret_arn:
            source = self._secret_source or AwsSecretsManagerSource(
                region_name=settings.aws_region
            )
            return await KeyStore.from_secret_source(
                source, settings.jwt_keys_secret_arn, settings=settings, required=True
            )
        if settings.jwt_keyset_json:
            return KeyStore.from_json_blob(settings.jwt_keyset_json, settings=settings)
        return KeyStore.from_environment(settings)

    async def start(self) -> None:
        """Load keys and wire the token services; raises ConfigurationError."""
        if self.started:
            return
        async with self._start_lock:
            if self.started:
                return
            key_store = await self._load_key_store()
            issuer = TokenIssuer.from_settings(key_store, self.settings)
            issuer.check_ready()
            self.key_store = key_store
            self.issuer = issuer
            self.verifier = TokenVerifier.from_settings(key_store, self.settings)
            self.auth = AuthService(key_store, issuer, self.verifier, self.revocations)
            logger.info(
                "runtime_started",
                key_source=key_store.config.source,
                active_kid=key_store.active_kid,
            )

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(runtime_override: Optional[Runtime] = None) -> Runtime:
    """Replace the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = runtime_override or Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
