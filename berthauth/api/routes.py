from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from berthauth.api.schemas import (
    CurrentUserResponse,
    Envelope,
    LogoutRequest,
    LogoutResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from berthauth.service.auth import AuthContext, AuthService
from berthauth.service.authorization import authorize
from berthauth.service.errors import ServiceUnavailableError
from berthauth.service.rate_limit import normalize_client_id
from berthauth.service.runtime import get_runtime
from berthauth.service.tokens import TokenPair

router = APIRouter(prefix="/v1")


def client_id_from_request(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Client address used as the rate-limit identity.

    X-Forwarded-For is only honored behind a trusted proxy; otherwise any
    client could pick its own bucket.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return normalize_client_id(forwarded.split(",")[0])
    host = request.client.host if request.client else None
    return normalize_client_id(host)


def _auth_service() -> AuthService:
    runtime = get_runtime()
    if runtime.auth is None:
        raise ServiceUnavailableError("authentication is not ready")
    return runtime.auth


def rate_limit(scope: str):
    """Dependency enforcing the named rate-limit rule for the calling client."""

    async def _enforce(request: Request, response: Response) -> None:
        runtime = get_runtime()
        client_id = client_id_from_request(
            request, trust_forwarded_for=runtime.settings.trust_forwarded_for
        )
        decision = await runtime.rate_limiter.enforce(client_id, scope)
        for name, value in decision.headers().items():
            response.headers[name] = value

    return _enforce


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await _auth_service().authenticate(authorization)


def require_roles(*roles: str):
    async def _check(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        authorize(principal.claims, roles=list(roles))
        return principal

    return _check


def require_permissions(*permissions: str):
    async def _check(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        authorize(principal.claims, permissions=list(permissions))
        return principal

    return _check


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        access_expires_at=_timestamp(pair.access_expires_at),
        refresh_expires_at=_timestamp(pair.refresh_expires_at),
    )


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("refresh"))],
)
async def refresh_tokens(body: TokenRefreshRequest):
    pair = await _auth_service().refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    refresh_token = body.refresh_token if body else None
    result = await _auth_service().logout(authorization, refresh_token=refresh_token)
    return Envelope(status="ok", data=LogoutResponse(**result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_current_user)):
    return Envelope(
        status="ok",
        data=CurrentUserResponse(
            user_id=principal.user_id,
            role=principal.role,
            zone_id=principal.zone_id,
            device_id=principal.device_id,
            email=principal.email,
            permissions=principal.permissions,
            token_expires_at=_timestamp(principal.expires_at),
        ),
    )
