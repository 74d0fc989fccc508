from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request being served; echoed in envelopes and log lines
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Field names containing one of these markers are masked
_SENSITIVE_MARKERS = ("password", "secret", "token", "private_key", "authorization", "email")

# Identifiers that match a marker but carry no credential
SAFE_FIELDS = frozenset(
    {
        "kid",
        "active_kid",
        "previous_kid",
        "kids",
        "jti",
        "refresh_jti",
        "previous_jti",
        "typ",
        "expected_typ",
        "secret_id",
        "secret_configured",
    }
)

# Compact JWS: base64url JSON header ("eyJ") followed by two more segments
_COMPACT_JWT = re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*")
_PEM_BLOCK = re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_value(value: str) -> str:
    """Keep the first and last two characters of a credential."""
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _scrub_embedded(value: str) -> str:
    value = _PEM_BLOCK.sub("[pem redacted]", value)
    return _COMPACT_JWT.sub(lambda match: mask_value(match.group(0)), value)


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and PII before rendering.

    Sensitive field names are masked whole; tokens and PEM blocks embedded
    in any other string field (error messages, headers) are masked in place.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in SAFE_FIELDS:
            continue
        if any(marker in lower_key for marker in _SENSITIVE_MARKERS):
            event_dict[key] = mask_value(value)
        else:
            event_dict[key] = _scrub_embedded(value)
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
