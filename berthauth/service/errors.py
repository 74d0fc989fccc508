from __future__ import annotations

from typing import Optional


class ConfigurationError(RuntimeError):
    """Key material or settings are unusable; raised at startup and aborts boot.

    Deliberately not a ServiceError: it never maps to a per-request response.
    """


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is the coarse public category (missing_token, expired, revoked,
    invalid). The exact verifier outcome stays server-side.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str, *, reason: str = "invalid", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {"reason": reason}
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient role, permission or zone (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {"retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServiceUnavailableError(ServiceError):
    """A required dependency is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ConfigurationError",
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
