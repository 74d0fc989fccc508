from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

ACCESS_TOKEN_TTL_SECONDS = 60 * 60
REFRESH_TOKEN_TTL_SECONDS = 30 * 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, verification and auth throttling."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Use the in-process cache instead of Redis (single process only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Key sources, in order of precedence: secret store, key-set JSON, single key
    jwt_keys_secret_arn: str | None = env_field(
        None,
        "JWT_KEYS_SECRET_ARN",
        description="Secrets Manager id of the key-set JSON; boot fails if it cannot be read",
    )
    aws_region: str | None = env_field(None, "AWS_REGION")
    jwt_keyset_json: str | None = env_field(None, "JWT_KEYSET_JSON")
    jwt_active_kid: str = env_field("primary", "JWT_ACTIVE_KID")
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY")
    jwt_additional_public_keys: str | None = env_field(
        None,
        "JWT_ADDITIONAL_PUBLIC_KEYS",
        description="JSON map of kid -> public key PEM for keys from prior rotations",
    )

    jwt_issuer: str = env_field("berthcare-api", "JWT_ISSUER")
    jwt_audience: str = env_field("berthcare-app", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        ACCESS_TOKEN_TTL_SECONDS, "ACCESS_TOKEN_TTL_SECONDS"
    )
    refresh_token_ttl_seconds: int = env_field(
        REFRESH_TOKEN_TTL_SECONDS, "REFRESH_TOKEN_TTL_SECONDS"
    )
    clock_skew_leeway_seconds: int = env_field(0, "JWT_CLOCK_SKEW_LEEWAY_SECONDS")

    key_cache_ttl_seconds: int = env_field(
        300,
        "JWT_KEY_CACHE_TTL_SECONDS",
        description="How long loaded key material is served before it is re-read",
    )
    key_refresh_retry_seconds: int = env_field(30, "JWT_KEY_REFRESH_RETRY_SECONDS")
    retired_key_grace_seconds: int | None = env_field(
        REFRESH_TOKEN_TTL_SECONDS,
        "JWT_RETIRED_KEY_GRACE_SECONDS",
        description="Retired keys older than this are dropped; unset keeps them indefinitely",
    )
    purge_retired_private_keys: bool = env_field(True, "JWT_PURGE_RETIRED_PRIVATE_KEYS")
    min_rsa_key_bits: int = env_field(2048, "JWT_MIN_RSA_KEY_BITS")

    # Rate limits (fixed window, per client and route scope)
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_limit_window_seconds: int = env_field(
        60 * 60, "REGISTER_RATE_LIMIT_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(30, "REFRESH_RATE_LIMIT")
    refresh_rate_limit_window_seconds: int = env_field(
        15 * 60, "REFRESH_RATE_LIMIT_WINDOW_SECONDS"
    )
    global_rate_limit: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    global_rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client id (behind a load balancer)",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "jwt_keys_secret_arn",
        "jwt_keyset_json",
        "jwt_private_key",
        "jwt_public_key",
        "jwt_additional_public_keys",
        "redis_url",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("retired_key_grace_seconds", mode="before")
    @classmethod
    def _parse_grace(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in {"", "none", "off"}:
            return None
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "key_cache_ttl_seconds",
        "key_refresh_retry_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
