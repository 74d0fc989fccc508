from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from jwt.algorithms import RSAAlgorithm

from berthauth.config import Settings
from berthauth.logging import get_logger
from berthauth.service.errors import ConfigurationError
from berthauth.service.secrets import SecretSource

logger = get_logger(__name__)

BASE64_PREFIX = "base64:"

# Variables whose change triggers a reload of an environment-sourced store
KEY_ENVIRONMENT_VARIABLES = (
    "JWT_ACTIVE_KID",
    "JWT_PRIVATE_KEY",
    "JWT_PUBLIC_KEY",
    "JWT_ADDITIONAL_PUBLIC_KEYS",
)


def decode_key_material(value: str, *, label: str) -> str:
    """Normalize a PEM value from configuration.

    Accepts raw PEM, PEM with escaped ``\\n`` sequences (single-line env
    values) and ``base64:``-prefixed PEM.
    """
    raw = value.strip()
    if raw.startswith(BASE64_PREFIX):
        encoded = "".join(raw[len(BASE64_PREFIX):].split())
        try:
            raw = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"{label} is not valid base64") from exc
    if "\\n" in raw and "\n" not in raw:
        raw = raw.replace("\\n", "\n")
    return raw.strip() + "\n"


def _parse_timestamp(value: Any, *, label: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"{label} must be a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ConfigurationError(f"{label} is not an ISO-8601 timestamp") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise ConfigurationError(f"{label} must be a timestamp")


def _load_public_key(pem: str, *, kid: str, min_key_bits: int) -> RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError(f"public key for kid '{kid}' is not a valid PEM") from exc
    if not isinstance(key, RSAPublicKey):
        raise ConfigurationError(f"public key for kid '{kid}' is not an RSA key")
    if key.key_size < min_key_bits:
        raise ConfigurationError(
            f"public key for kid '{kid}' is {key.key_size} bits; at least {min_key_bits} required"
        )
    return key


def _load_private_key(pem: str, *, kid: str) -> RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        # TypeError covers password-protected keys
        raise ConfigurationError(f"private key for kid '{kid}' is not a valid unencrypted PEM") from exc
    if not isinstance(key, RSAPrivateKey):
        raise ConfigurationError(f"private key for kid '{kid}' is not an RSA key")
    return key


@dataclass(frozen=True)
class KeyEntry:
    """One generation of key material, identified by its ``kid``."""

    kid: str
    public_key_pem: str = field(repr=False)
    public_key: RSAPublicKey = field(repr=False, compare=False)
    private_key_pem: Optional[str] = field(default=None, repr=False)
    private_key: Optional[RSAPrivateKey] = field(default=None, repr=False, compare=False)
    retired_at: Optional[float] = None

    @classmethod
    def from_pem(
        cls,
        kid: str,
        public_key_pem: str,
        private_key_pem: Optional[str] = None,
        *,
        retired_at: Optional[float] = None,
        min_key_bits: int = 2048,
    ) -> "KeyEntry":
        if not kid or not kid.strip():
            raise ConfigurationError("key id must be a non-empty string")
        public_pem = decode_key_material(public_key_pem, label=f"public key for kid '{kid}'")
        public_key = _load_public_key(public_pem, kid=kid, min_key_bits=min_key_bits)
        private_pem: Optional[str] = None
        private_key: Optional[RSAPrivateKey] = None
        if private_key_pem:
            private_pem = decode_key_material(private_key_pem, label=f"private key for kid '{kid}'")
            private_key = _load_private_key(private_pem, kid=kid)
            if private_key.public_key().public_numbers() != public_key.public_numbers():
                raise ConfigurationError(f"private and public key for kid '{kid}' do not match")
        return cls(
            kid=kid,
            public_key_pem=public_pem,
            public_key=public_key,
            private_key_pem=private_pem,
            private_key=private_key,
            retired_at=retired_at,
        )

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def without_private_key(self) -> "KeyEntry":
        return replace(self, private_key_pem=None, private_key=None)


@dataclass(frozen=True)
class RotationPolicy:
    """What happens to non-active keys when a key set is loaded.

    ``grace_seconds``: keys whose ``retiredAt`` is older than this are dropped
    (None keeps retired keys until they are removed from the source).
    ``purge_retired_private_keys``: discard private material of non-active keys
    so only the active generation can sign.
    """

    grace_seconds: Optional[int] = None
    purge_retired_private_keys: bool = True
    min_key_bits: int = 2048

    @classmethod
    def from_settings(cls, settings: Settings) -> "RotationPolicy":
        return cls(
            grace_seconds=settings.retired_key_grace_seconds,
            purge_retired_private_keys=settings.purge_retired_private_keys,
            min_key_bits=settings.min_rsa_key_bits,
        )

    def apply(
        self, entries: Mapping[str, KeyEntry], active_kid: str, *, now: Optional[float] = None
    ) -> Dict[str, KeyEntry]:
        now = time.time() if now is None else now
        kept: Dict[str, KeyEntry] = {}
        for kid, entry in entries.items():
            if kid == active_kid:
                kept[kid] = entry
                continue
            if (
                self.grace_seconds is not None
                and entry.retired_at is not None
                and entry.retired_at + self.grace_seconds <= now
            ):
                logger.info("retired_key_dropped", kid=kid, retired_at=entry.retired_at)
                continue
            if self.purge_retired_private_keys and entry.can_sign:
                entry = entry.without_private_key()
            kept[kid] = entry
        return kept


@dataclass(frozen=True)
class KeyConfig:
    """Immutable snapshot of the key set; replaced wholesale on refresh."""

    active_kid: str
    keys: Mapping[str, KeyEntry]
    source: str = "static"

    def __post_init__(self) -> None:
        if self.active_kid not in self.keys:
            raise ConfigurationError(f"active kid '{self.active_kid}' is not in the key set")
        object.__setattr__(self, "keys", MappingProxyType(dict(self.keys)))

    @property
    def active(self) -> KeyEntry:
        return self.keys[self.active_kid]

    def verification_candidates(self, header_kid: Optional[str] = None) -> List[VerificationKey]:
        """Keys to try, most likely first.

        The declared kid leads when known, otherwise the active kid; the rest
        of the known generations follow so tokens from a rotation window still
        verify.
        """
        first = header_kid if header_kid in self.keys else self.active_kid
        order = [first]
        if self.active_kid != first:
            order.append(self.active_kid)
        order.extend(kid for kid in self.keys if kid not in order)
        return [VerificationKey(kid=kid, public_key=self.keys[kid].public_key) for kid in order]


@dataclass(frozen=True)
class SigningKey:
    kid: str
    private_key: RSAPrivateKey = field(repr=False)


@dataclass(frozen=True)
class VerificationKey:
    kid: str
    public_key: RSAPublicKey = field(repr=False)


def _entry_from_spec(
    kid: str, spec: Any, policy: RotationPolicy, *, allow_private: bool = True
) -> KeyEntry:
    if not isinstance(spec, dict):
        raise ConfigurationError(f"key '{kid}' must be an object")
    public_pem = spec.get("publicKey")
    if not isinstance(public_pem, str) or not public_pem.strip():
        raise ConfigurationError(f"key '{kid}' has no publicKey")
    private_pem = spec.get("privateKey") if allow_private else None
    if private_pem is not None and not isinstance(private_pem, str):
        raise ConfigurationError(f"privateKey of key '{kid}' must be a string")
    return KeyEntry.from_pem(
        kid,
        public_pem,
        private_pem or None,
        retired_at=_parse_timestamp(spec.get("retiredAt"), label=f"retiredAt of key '{kid}'"),
        min_key_bits=policy.min_key_bits,
    )


def parse_key_set(
    blob: str | bytes | Mapping[str, Any],
    *,
    policy: Optional[RotationPolicy] = None,
    source: str = "json",
    now: Optional[float] = None,
) -> KeyConfig:
    """Build a KeyConfig from the key-set JSON document.

    Shape: ``{"activeKid", "keys": {kid: {"publicKey", "privateKey"?}},
    "previous"?: [{"kid", "publicKey", "privateKey"?}]}``. The active kid must be
    in ``keys`` with both keys; every other kid needs a public key. Entries in
    ``previous`` never override ``keys``.
    """
    policy = policy or RotationPolicy()
    if isinstance(blob, (str, bytes)):
        try:
            document = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigurationError("key set is not valid JSON") from exc
    else:
        document = blob
    if not isinstance(document, dict):
        raise ConfigurationError("key set must be a JSON object")

    active_kid = document.get("activeKid")
    if not isinstance(active_kid, str) or not active_kid.strip():
        raise ConfigurationError("key set is missing activeKid")
    keys = document.get("keys")
    if not isinstance(keys, dict) or not keys:
        raise ConfigurationError("key set must contain a non-empty 'keys' object")
    if active_kid not in keys:
        raise ConfigurationError(f"active kid '{active_kid}' is not present in 'keys'")

    entries: Dict[str, KeyEntry] = {}
    for kid, spec in keys.items():
        entries[kid] = _entry_from_spec(kid, spec, policy)
    if not entries[active_kid].can_sign:
        raise ConfigurationError(f"active kid '{active_kid}' has no privateKey")

    previous = document.get("previous") or []
    if not isinstance(previous, list):
        raise ConfigurationError("'previous' must be a list")
    for spec in previous:
        kid = spec.get("kid") if isinstance(spec, dict) else None
        if not isinstance(kid, str) or not kid.strip():
            raise ConfigurationError("every 'previous' entry needs a kid")
        if kid in entries:
            continue
        entries[kid] = _entry_from_spec(kid, spec, policy)

    return KeyConfig(
        active_kid=active_kid,
        keys=policy.apply(entries, active_kid, now=now),
        source=source,
    )


def _environment_key_inputs(environ: Mapping[str, str], settings: Settings) -> Dict[str, Optional[str]]:
    """Live environment values win over Settings (which carry .env values)."""

    def pick(name: str, fallback: Optional[str]) -> Optional[str]:
        value = environ.get(name)
        if value is not None and value.strip():
            return value
        return fallback

    return {
        "kid": pick("JWT_ACTIVE_KID", settings.jwt_active_kid),
        "private_key": pick("JWT_PRIVATE_KEY", settings.jwt_private_key),
        "public_key": pick("JWT_PUBLIC_KEY", settings.jwt_public_key),
        "additional": pick("JWT_ADDITIONAL_PUBLIC_KEYS", settings.jwt_additional_public_keys),
    }


def load_environment_config(
    inputs: Mapping[str, Optional[str]],
    *,
    policy: Optional[RotationPolicy] = None,
    now: Optional[float] = None,
) -> KeyConfig:
    """Build a KeyConfig from a single active key plus public-only prior keys."""
    policy = policy or RotationPolicy()
    kid = (inputs.get("kid") or "").strip()
    if not kid:
        raise ConfigurationError("JWT_ACTIVE_KID must not be empty")
    private_pem = inputs.get("private_key")
    public_pem = inputs.get("public_key")
    if not private_pem:
        raise ConfigurationError(
            "JWT_PRIVATE_KEY not configured. "
            "Set JWT_PRIVATE_KEY or configure JWT_KEYS_SECRET_ARN."
        )
    if not public_pem:
        raise ConfigurationError(
            "JWT_PUBLIC_KEY not configured. "
            "Set JWT_PUBLIC_KEY or configure JWT_KEYS_SECRET_ARN."
        )
    entries: Dict[str, KeyEntry] = {
        kid: KeyEntry.from_pem(kid, public_pem, private_pem, min_key_bits=policy.min_key_bits)
    }

    additional = inputs.get("additional")
    if additional:
        try:
            mapping = json.loads(additional)
        except json.JSONDecodeError as exc:
            raise ConfigurationError("JWT_ADDITIONAL_PUBLIC_KEYS is not valid JSON") from exc
        if not isinstance(mapping, dict):
            raise ConfigurationError("JWT_ADDITIONAL_PUBLIC_KEYS must be a JSON object")
        for extra_kid, value in mapping.items():
            if extra_kid == kid:
                logger.warning("additional_key_shadows_active_key", kid=extra_kid)
                continue
            spec = {"publicKey": value} if isinstance(value, str) else value
            entries[extra_kid] = _entry_from_spec(extra_kid, spec, policy, allow_private=False)

    return KeyConfig(
        active_kid=kid,
        keys=policy.apply(entries, kid, now=now),
        source="environment",
    )


def _environment_fingerprint(environ: Mapping[str, str]) -> str:
    digest = hashlib.sha256()
    for name in KEY_ENVIRONMENT_VARIABLES:
        digest.update(name.encode())
        digest.update(b"\0")
        digest.update((environ.get(name) or "").encode())
        digest.update(b"\0")
    return digest.hexdigest()


class KeyStore:
    """Serves signing and verification keys from an atomically swapped KeyConfig.

    Readers take a single reference to the current snapshot, so no lock is
    needed on the verification path. Environment-sourced stores reload
    synchronously when their TTL elapses or the key variables change; remote
    stores reload through ``ensure_fresh`` with a single in-flight fetch.
    """

    def __init__(
        self,
        config: KeyConfig,
        *,
        loader: Optional[Callable[[], KeyConfig]] = None,
        async_loader: Optional[Callable[[], Awaitable[KeyConfig]]] = None,
        fingerprint: Optional[Callable[[], str]] = None,
        ttl_seconds: Optional[float] = None,
        retry_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._loader = loader
        self._async_loader = async_loader
        self._fingerprint = fingerprint
        self._ttl_seconds = ttl_seconds
        self._retry_seconds = retry_seconds
        self._clock = clock
        self._refresh_lock = asyncio.Lock()
        self._last_fingerprint = fingerprint() if fingerprint else None
        self._next_refresh_at = self._schedule(ttl_seconds)
        logger.info(
            "key_store_loaded",
            source=config.source,
            active_kid=config.active_kid,
            kids=list(config.keys),
        )

    # -- construction -------------------------------------------------------

    @classmethod
    def from_environment(
        cls,
        settings: Optional[Settings] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "KeyStore":
        settings = settings or Settings.from_env()
        environ = os.environ if environ is None else environ
        policy = RotationPolicy.from_settings(settings)

        def load() -> KeyConfig:
            return load_environment_config(
                _environment_key_inputs(environ, settings), policy=policy
            )

        return cls(
            load(),
            loader=load,
            fingerprint=lambda: _environment_fingerprint(environ),
            ttl_seconds=settings.key_cache_ttl_seconds,
            retry_seconds=settings.key_refresh_retry_seconds,
            clock=clock,
        )

    @classmethod
    def from_json_blob(
        cls,
        blob: str | bytes | Mapping[str, Any],
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "KeyStore":
        policy = RotationPolicy.from_settings(settings) if settings else RotationPolicy()
        return cls(parse_key_set(blob, policy=policy, source="json"), clock=clock)

    @classmethod
    async def from_secret_source(
        cls,
        source: SecretSource,
        secret_id: Optional[str],
        *,
        settings: Optional[Settings] = None,
        required: Optional[bool] = None,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "KeyStore":
        """Load the key set from a remote secret store.

        A configured secret that cannot be read or parsed aborts startup;
        running with stale or missing keys is never an option. Without a
        secret id, or with ``required=False``, the environment source is used.
        """
        settings = settings or Settings.from_env()
        required = bool(secret_id) if required is None else required
        if not secret_id:
            return cls.from_environment(settings, environ=environ, clock=clock)

        policy = RotationPolicy.from_settings(settings)

        async def load() -> KeyConfig:
            raw = await source.fetch(secret_id)
            return parse_key_set(raw, policy=policy, source="secret")

        try:
            config = await load()
        except Exception as exc:
            if required:
                logger.error(
                    "key_store_secret_load_failed",
                    secret_id=secret_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ConfigurationError(
                    f"unable to load signing keys from secret '{secret_id}'"
                ) from exc
            logger.warning(
                "key_store_secret_fallback",
                secret_id=secret_id,
                error=str(exc),
                fallback="environment",
            )
            return cls.from_environment(settings, environ=environ, clock=clock)

        return cls(
            config,
            async_loader=load,
            ttl_seconds=settings.key_cache_ttl_seconds,
            retry_seconds=settings.key_refresh_retry_seconds,
            clock=clock,
        )

    # -- refresh ------------------------------------------------------------

    def _schedule(self, delay: Optional[float]) -> Optional[float]:
        if delay is None:
            return None
        return self._clock() + delay

    def _ttl_elapsed(self) -> bool:
        return self._next_refresh_at is not None and self._clock() >= self._next_refresh_at

    def refresh(self, config: KeyConfig) -> None:
        """Swap in a new key set in one assignment."""
        previous = self._config
        self._config = config
        self._next_refresh_at = self._schedule(self._ttl_seconds)
        if previous.active_kid != config.active_kid:
            logger.info(
                "key_store_rotated",
                previous_kid=previous.active_kid,
                active_kid=config.active_kid,
                kids=list(config.keys),
            )

    def _maybe_reload(self) -> None:
        if self._loader is None:
            return
        changed = False
        if self._fingerprint is not None:
            current = self._fingerprint()
            changed = current != self._last_fingerprint
        if not changed and not self._ttl_elapsed():
            return
        try:
            config = self._loader()
        except ConfigurationError as exc:
            # Keep serving the last good key set
            logger.error("key_store_reload_failed", source=self._config.source, error=str(exc))
            self._next_refresh_at = self._schedule(self._retry_seconds)
            if self._fingerprint is not None:
                self._last_fingerprint = self._fingerprint()
            return
        if self._fingerprint is not None:
            self._last_fingerprint = self._fingerprint()
        self.refresh(config)

    def reload(self) -> None:
        """Force a synchronous reload from the configured loader."""
        if self._loader is None:
            raise ConfigurationError("key store has no synchronous loader")
        config = self._loader()
        if self._fingerprint is not None:
            self._last_fingerprint = self._fingerprint()
        self.refresh(config)

    async def ensure_fresh(self) -> None:
        """Reload key material if the cache TTL has elapsed.

        Concurrent callers share one fetch: waiters re-check staleness after
        acquiring the lock and return once the first fetch has landed.
        """
        if self._async_loader is None:
            self._maybe_reload()
            return
        if not self._ttl_elapsed():
            return
        async with self._refresh_lock:
            if not self._ttl_elapsed():
                return
            try:
                config = await self._async_loader()
            except Exception as exc:
                logger.error(
                    "key_store_refresh_failed",
                    source=self._config.source,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._next_refresh_at = self._schedule(self._retry_seconds)
                return
            self.refresh(config)

    # -- readers ------------------------------------------------------------

    def _current(self) -> KeyConfig:
        self._maybe_reload()
        return self._config

    @property
    def config(self) -> KeyConfig:
        return self._current()

    @property
    def active_kid(self) -> str:
        return self._current().active_kid

    @property
    def kids(self) -> List[str]:
        return list(self._current().keys)

    def has_key(self, kid: str) -> bool:
        return kid in self._current().keys

    def get_signing_key(self) -> SigningKey:
        config = self._current()
        entry = config.active
        if entry.private_key is None:
            raise ConfigurationError(f"active key '{entry.kid}' has no private key; cannot sign")
        return SigningKey(kid=entry.kid, private_key=entry.private_key)

    def get_verification_candidates(self, header_kid: Optional[str] = None) -> List[VerificationKey]:
        return self._current().verification_candidates(header_kid)

    def public_jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Public keys of every known generation as a JWKS document."""
        keys = []
        for entry in self._current().keys.values():
            jwk = json.loads(RSAAlgorithm.to_jwk(entry.public_key))
            jwk.update({"kid": entry.kid, "use": "sig", "alg": "RS256"})
            keys.append(jwk)
        return {"keys": keys}

    def describe(self) -> Dict[str, Any]:
        config = self._current()
        return {
            "source": config.source,
            "active_kid": config.active_kid,
            "kids": list(config.keys),
            "signing_ready": config.active.can_sign,
        }


__all__ = [
    "KeyEntry",
    "KeyConfig",
    "KeyStore",
    "RotationPolicy",
    "SigningKey",
    "VerificationKey",
    "decode_key_material",
    "load_environment_config",
    "parse_key_set",
]
