from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from berthauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "service_unavailable",
    "server_error",
})

# Compact RS256 tokens with a 2048-4096 bit key stay well under this
MAX_TOKEN_LENGTH = 4096


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime


class LogoutResponse(BaseModel):
    access_revoked: bool
    refresh_revoked: bool


class CurrentUserResponse(BaseModel):
    user_id: str
    role: str
    zone_id: str
    device_id: str
    email: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    token_expires_at: Optional[datetime] = None


class KeyStatus(BaseModel):
    source: str
    active_kid: str
    kids: List[str]
    signing_ready: bool


class HealthResponse(BaseModel):
    status: str
    keys: Optional[KeyStatus] = None
    cache: str
    detail: Optional[str] = None
