from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Tuple

import jwt

from berthauth.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
    Settings,
)
from berthauth.logging import get_logger
from berthauth.service.keystore import KeyStore

logger = get_logger(__name__)

JWT_ALGORITHM = "RS256"
DEFAULT_ISSUER = "berthcare-api"
DEFAULT_AUDIENCE = "berthcare-app"
DEFAULT_DEVICE_ID = "unknown-device"


class UserRole(str, Enum):
    CAREGIVER = "caregiver"
    COORDINATOR = "coordinator"
    ADMIN = "admin"
    FAMILY = "family"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Subject data carried by access and refresh tokens.

    ``token_id``, ``token_type``, ``issued_at`` and ``expires_at`` are filled
    in from a verified payload; callers building claims for issuance leave
    them unset.
    """

    user_id: str
    role: UserRole
    zone_id: str
    device_id: str = DEFAULT_DEVICE_ID
    email: Optional[str] = None
    permissions: Optional[Tuple[str, ...]] = None
    token_id: Optional[str] = None
    token_type: Optional[TokenType] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, UserRole):
            object.__setattr__(self, "role", UserRole(self.role))
        if self.permissions is not None and not isinstance(self.permissions, tuple):
            object.__setattr__(self, "permissions", tuple(self.permissions))
        if not self.device_id:
            object.__setattr__(self, "device_id", DEFAULT_DEVICE_ID)

    def to_payload(self, *, include_email: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sub": self.user_id,
            "userId": self.user_id,
            "role": self.role.value,
            "zoneId": self.zone_id,
            "deviceId": self.device_id,
        }
        if include_email and self.email:
            payload["email"] = self.email
        if self.permissions:
            payload["permissions"] = list(self.permissions)
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenClaims":
        """Map a decoded payload onto claims; raises ValueError when it does not fit."""
        user_id = payload.get("userId") or payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("token has no user id")
        zone_id = payload.get("zoneId")
        if not isinstance(zone_id, str) or not zone_id:
            raise ValueError("token has no zone id")
        role = UserRole(payload.get("role"))
        permissions = payload.get("permissions")
        if permissions is not None:
            if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
                raise ValueError("permissions must be a list of strings")
            permissions = tuple(permissions)
        email = payload.get("email")
        if email is not None and not isinstance(email, str):
            raise ValueError("email must be a string")
        device_id = payload.get("deviceId") or DEFAULT_DEVICE_ID
        if not isinstance(device_id, str):
            raise ValueError("deviceId must be a string")
        token_id = payload.get("jti")
        if token_id is not None and (not isinstance(token_id, str) or not token_id):
            raise ValueError("jti must be a non-empty string")
        token_type = payload.get("typ")
        return cls(
            user_id=user_id,
            role=role,
            zone_id=zone_id,
            device_id=device_id,
            email=email,
            permissions=permissions,
            token_id=token_id,
            token_type=TokenType(token_type) if token_type is not None else None,
            issued_at=_as_int(payload.get("iat")),
            expires_at=_as_int(payload.get("exp")),
        )


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("timestamp claims must be numeric")
    return int(value)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class IssuedToken(NamedTuple):
    token: str
    token_id: str
    kid: str
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh token issued together.

    ``refresh_token_hash`` is what the persistence layer stores; the raw
    refresh token only ever goes back to the client.
    """

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    access_token_id: str
    refresh_token_id: str
    refresh_token_hash: str
    access_expires_at: int
    refresh_expires_at: int
    issued_at: int
    kid: str
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        return max(0, self.access_expires_at - self.issued_at)


class TokenIssuer:
    """Signs RS256 tokens with the key store's active key."""

    def __init__(
        self,
        key_store: KeyStore,
        *,
        issuer: str = DEFAULT_ISSUER,
        audience: str = DEFAULT_AUDIENCE,
        access_ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
        refresh_ttl_seconds: int = REFRESH_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_store = key_store
        self.issuer = issuer
        self.audience = audience
        self._lifetimes = {
            TokenType.ACCESS: access_ttl_seconds,
            TokenType.REFRESH: refresh_ttl_seconds,
        }
        self._clock = clock

    @classmethod
    def from_settings(cls, key_store: KeyStore, settings: Settings) -> "TokenIssuer":
        return cls(
            key_store,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )

    def token_lifetime(self, token_type: TokenType | str) -> int:
        return self._lifetimes[TokenType(token_type)]

    def check_ready(self) -> None:
        """Raise ConfigurationError if no token can be signed."""
        self.key_store.get_signing_key()

    def _sign(
        self,
        claims: TokenClaims,
        token_type: TokenType,
        *,
        token_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> IssuedToken:
        signing_key = self.key_store.get_signing_key()
        now = int(self._clock()) if now is None else now
        expires_at = now + self.token_lifetime(token_type)
        jti = token_id or str(uuid.uuid4())
        payload = claims.to_payload(include_email=token_type is TokenType.ACCESS)
        payload.update(
            {
                "typ": token_type.value,
                "iss": self.issuer,
                "aud": self.audience,
                "iat": now,
                "exp": expires_at,
                "jti": jti,
            }
        )
        token = jwt.encode(
            payload,
            signing_key.private_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": signing_key.kid},
        )
        logger.debug(
            "token_issued",
            typ=token_type.value,
            kid=signing_key.kid,
            jti=jti,
            user_id=claims.user_id,
        )
        return IssuedToken(token=token, token_id=jti, kid=signing_key.kid, expires_at=expires_at)

    def issue_access_token(self, claims: TokenClaims) -> str:
        return self._sign(claims, TokenType.ACCESS).token

    def issue_refresh_token(self, claims: TokenClaims, token_id: Optional[str] = None) -> str:
        return self._sign(claims, TokenType.REFRESH, token_id=token_id).token

    def issue_pair(self, claims: TokenClaims, *, refresh_token_id: Optional[str] = None) -> TokenPair:
        now = int(self._clock())
        access = self._sign(claims, TokenType.ACCESS, now=now)
        refresh = self._sign(claims, TokenType.REFRESH, token_id=refresh_token_id, now=now)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_token_id=access.token_id,
            refresh_token_id=refresh.token_id,
            refresh_token_hash=hash_token(refresh.token),
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            issued_at=now,
            kid=access.kid,
        )


__all__ = [
    "DEFAULT_DEVICE_ID",
    "IssuedToken",
    "JWT_ALGORITHM",
    "TokenClaims",
    "TokenIssuer",
    "TokenPair",
    "TokenType",
    "UserRole",
    "hash_token",
]
