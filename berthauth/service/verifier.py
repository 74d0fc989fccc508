from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import jwt
from jwt.utils import base64url_decode

from berthauth.config import Settings
from berthauth.logging import get_logger
from berthauth.service.keystore import KeyStore
from berthauth.service.tokens import (
    DEFAULT_AUDIENCE,
    DEFAULT_ISSUER,
    JWT_ALGORITHM,
    TokenClaims,
    TokenType,
)

logger = get_logger(__name__)

REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "jti"]


class TokenError(str, Enum):
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    UNKNOWN_KEY = "unknown_key"
    MALFORMED = "malformed"
    INVALID_CLAIMS = "invalid_claims"
    # Produced by the revocation check, never by the verifier itself
    REVOKED = "revoked"


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    claims: Optional[TokenClaims] = None
    error: Optional[TokenError] = None
    kid: Optional[str] = None

    @classmethod
    def success(cls, claims: TokenClaims, kid: str) -> "VerifyResult":
        return cls(ok=True, claims=claims, kid=kid)

    @classmethod
    def failure(cls, error: TokenError, kid: Optional[str] = None) -> "VerifyResult":
        return cls(ok=False, error=error, kid=kid)


def _decode_json_segment(segment: str) -> Dict[str, Any]:
    value = json.loads(base64url_decode(segment))
    if not isinstance(value, dict):
        raise ValueError("segment is not a JSON object")
    return value


def split_token(token: str) -> Tuple[Dict[str, Any], Dict[str, Any], str]:
    """Decode the header and payload of a compact JWS.

    Raises ValueError when the token does not have three segments or the
    header or payload is not a base64url JSON object. The signature segment
    is returned undecoded.
    """
    segments = token.split(".")
    if len(segments) != 3:
        raise ValueError("token must have three segments")
    try:
        header = _decode_json_segment(segments[0])
        payload = _decode_json_segment(segments[1])
    except (TypeError, ValueError) as exc:
        raise ValueError("token header or payload is not valid base64url JSON") from exc
    return header, payload, segments[2]


def decode_unverified(token: str) -> Optional[Dict[str, Any]]:
    """Read a payload without checking the signature.

    Diagnostics and revocation TTLs only; never use the result to make an
    access decision.
    """
    if not isinstance(token, str):
        return None
    try:
        _, payload, _ = split_token(token)
    except ValueError:
        return None
    return payload


class TokenVerifier:
    """Verify RS256 tokens against every key generation the store knows."""

    def __init__(
        self,
        key_store: KeyStore,
        *,
        issuer: str = DEFAULT_ISSUER,
        audience: str = DEFAULT_AUDIENCE,
        leeway_seconds: int = 0,
    ) -> None:
        self.key_store = key_store
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, key_store: KeyStore, settings: Settings) -> "TokenVerifier":
        return cls(
            key_store,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )

    def _fail(self, reason: TokenError, kid: Optional[str] = None, **fields: Any) -> VerifyResult:
        logger.info("token_verification_failed", reason=reason.value, kid=kid, **fields)
        return VerifyResult.failure(reason, kid=kid)

    def verify(
        self, token: str, expected_type: Optional[TokenType] = None
    ) -> VerifyResult:
        if not token or not isinstance(token, str):
            return self._fail(TokenError.MALFORMED)
        try:
            header, _, signature_segment = split_token(token)
        except ValueError as exc:
            return self._fail(TokenError.MALFORMED, error=str(exc))
        if header.get("alg") != JWT_ALGORITHM:
            return self._fail(TokenError.MALFORMED, alg=header.get("alg"))

        config = self.key_store.config
        header_kid = header.get("kid")
        if header_kid is not None and (
            not isinstance(header_kid, str) or header_kid not in config.keys
        ):
            return self._fail(TokenError.UNKNOWN_KEY, kid=str(header_kid))

        try:
            base64url_decode(signature_segment)
        except ValueError:
            return self._fail(TokenError.INVALID_SIGNATURE, kid=header_kid)

        for candidate in config.verification_candidates(header_kid):
            try:
                payload = jwt.decode(
                    token,
                    candidate.public_key,
                    algorithms=[JWT_ALGORITHM],
                    issuer=self.issuer,
                    audience=self.audience,
                    leeway=self.leeway_seconds,
                    options={"require": REQUIRED_CLAIMS},
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.ExpiredSignatureError:
                return self._fail(TokenError.EXPIRED, kid=candidate.kid)
            except (
                jwt.InvalidIssuerError,
                jwt.InvalidAudienceError,
                jwt.MissingRequiredClaimError,
                jwt.ImmatureSignatureError,
                jwt.InvalidIssuedAtError,
            ) as exc:
                return self._fail(TokenError.INVALID_CLAIMS, kid=candidate.kid, error=str(exc))
            except jwt.PyJWTError as exc:
                return self._fail(TokenError.MALFORMED, kid=candidate.kid, error=str(exc))

            try:
                claims = TokenClaims.from_payload(payload)
            except ValueError as exc:
                return self._fail(TokenError.MALFORMED, kid=candidate.kid, error=str(exc))
            if expected_type is not None and claims.token_type is not TokenType(expected_type):
                return self._fail(
                    TokenError.INVALID_CLAIMS,
                    kid=candidate.kid,
                    expected_typ=TokenType(expected_type).value,
                    typ=claims.token_type.value if claims.token_type else None,
                )
            return VerifyResult.success(claims, candidate.kid)

        return self._fail(TokenError.INVALID_SIGNATURE, kid=header_kid)


__all__ = ["TokenError", "TokenVerifier", "VerifyResult", "decode_unverified", "split_token"]
