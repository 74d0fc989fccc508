from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from berthauth.logging import get_logger
from berthauth.service.authorization import effective_permissions
from berthauth.service.errors import AuthenticationError, ServiceUnavailableError
from berthauth.service.keystore import KeyStore
from berthauth.service.revocation import RevocationStore
from berthauth.service.tokens import TokenClaims, TokenIssuer, TokenPair, TokenType
from berthauth.service.verifier import TokenError, TokenVerifier, VerifyResult
from berthauth.storage.errors import CacheUnavailableError

logger = get_logger(__name__)

# Public reason codes; the exact verifier outcome is logged, not returned
_PUBLIC_REASONS = {
    TokenError.EXPIRED: "expired",
    TokenError.REVOKED: "revoked",
}


def public_reason(error: Optional[TokenError]) -> str:
    return _PUBLIC_REASONS.get(error, "invalid") if error else "invalid"


@dataclass
class AuthContext:
    user_id: str
    role: str
    zone_id: str
    device_id: str
    token_id: Optional[str]
    expires_at: Optional[int]
    email: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    kid: Optional[str] = None
    claims: Optional[TokenClaims] = field(default=None, repr=False)


class AuthService:
    """Bearer authentication, refresh rotation and logout on top of the token core."""

    def __init__(
        self,
        key_store: KeyStore,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        revocations: RevocationStore,
    ) -> None:
        self.key_store = key_store
        self.issuer = issuer
        self.verifier = verifier
        self.revocations = revocations
        self.logger = logger

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    def _reject(self, result: VerifyResult) -> AuthenticationError:
        reason = public_reason(result.error)
        message = "Token expired" if reason == "expired" else "Invalid token"
        return AuthenticationError(message, reason=reason)

    async def _verify(self, token: str, token_type: TokenType) -> VerifyResult:
        await self.key_store.ensure_fresh()
        return self.verifier.verify(token, expected_type=token_type)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Missing bearer token", reason="missing_token")
        result = await self._verify(token, TokenType.ACCESS)
        if not result.ok or result.claims is None:
            raise self._reject(result)
        if await self.revocations.is_revoked(token):
            self.logger.info(
                "access_token_revoked",
                jti=result.claims.token_id,
                user_id=result.claims.user_id,
            )
            raise AuthenticationError("Token revoked", reason="revoked")
        claims = result.claims
        return AuthContext(
            user_id=claims.user_id,
            role=claims.role.value,
            zone_id=claims.zone_id,
            device_id=claims.device_id,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
            email=claims.email,
            permissions=effective_permissions(claims),
            kid=result.kid,
            claims=claims,
        )

    def issue_token_pair(self, claims: TokenClaims) -> TokenPair:
        """Issue access + refresh tokens for a freshly authenticated user."""
        pair = self.issuer.issue_pair(claims)
        self.logger.info(
            "token_pair_issued",
            user_id=claims.user_id,
            kid=pair.kid,
            refresh_jti=pair.refresh_token_id,
        )
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair; each refresh token works once."""
        if not refresh_token:
            raise AuthenticationError("Missing refresh token", reason="missing_token")
        result = await self._verify(refresh_token, TokenType.REFRESH)
        if not result.ok or result.claims is None:
            raise self._reject(result)
        claims = result.claims
        if await self.revocations.is_revoked(refresh_token):
            self.logger.warning(
                "refresh_token_revoked", jti=claims.token_id, user_id=claims.user_id
            )
            raise AuthenticationError("Token revoked", reason="revoked")
        try:
            first_use = await self.revocations.consume(refresh_token)
        except CacheUnavailableError as exc:
            self.logger.error("refresh_token_consume_failed", jti=claims.token_id, error=str(exc))
            raise ServiceUnavailableError("token store unavailable") from exc
        if not first_use:
            self.logger.warning(
                "refresh_token_reuse_detected", jti=claims.token_id, user_id=claims.user_id
            )
            raise AuthenticationError("Token revoked", reason="revoked")

        subject = TokenClaims(
            user_id=claims.user_id,
            role=claims.role,
            zone_id=claims.zone_id,
            device_id=claims.device_id,
            permissions=claims.permissions,
        )
        pair = self.issuer.issue_pair(subject)
        self.logger.info(
            "token_refreshed",
            user_id=claims.user_id,
            previous_jti=claims.token_id,
            refresh_jti=pair.refresh_token_id,
        )
        return pair

    async def logout(
        self, authorization: Optional[str], refresh_token: Optional[str] = None
    ) -> Dict[str, bool]:
        """Revoke the caller's access token and, optionally, its refresh token.

        An access token that has already expired needs no denylist entry, so
        logging out with one succeeds without writing anything.
        """
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Missing bearer token", reason="missing_token")
        access = await self._verify(token, TokenType.ACCESS)
        if not access.ok and access.error is not TokenError.EXPIRED:
            raise self._reject(access)

        refresh: Optional[VerifyResult] = None
        if refresh_token:
            refresh = self.verifier.verify(refresh_token, expected_type=TokenType.REFRESH)
            if not refresh.ok and refresh.error is not TokenError.EXPIRED:
                raise self._reject(refresh)
            if (
                refresh.ok
                and access.ok
                and refresh.claims is not None
                and access.claims is not None
                and refresh.claims.user_id != access.claims.user_id
            ):
                self.logger.warning(
                    "logout_token_subject_mismatch",
                    user_id=access.claims.user_id,
                )
                raise AuthenticationError("Invalid token", reason="invalid")

        revoked = {"access_revoked": False, "refresh_revoked": False}
        try:
            if access.ok:
                revoked["access_revoked"] = await self.revocations.revoke(token)
            if refresh is not None and refresh.ok and refresh_token:
                revoked["refresh_revoked"] = await self.revocations.revoke(refresh_token)
        except CacheUnavailableError as exc:
            self.logger.error("logout_revocation_failed", error=str(exc))
            raise ServiceUnavailableError("token store unavailable") from exc

        self.logger.info(
            "logout_completed",
            user_id=access.claims.user_id if access.claims else None,
            **revoked,
        )
        return revoked


__all__ = ["AuthContext", "AuthService", "public_reason"]
