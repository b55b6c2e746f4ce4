from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_LOG_KEYS = (
    "password",
    "pin",
    "secret",
    "token",
    "authorization",
    "cookie",
    "csrf",
)


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current request context."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
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


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-bearing values before they reach a renderer.

    Keys such as ``access_token`` or ``pin`` keep a two character prefix and
    suffix so operators can still correlate entries. Keys ending in ``_hash``
    or ``_id`` are identifiers rather than secrets and are left alone.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.endswith(("_hash", "_id", "_ids")):
            continue
        if not any(marker in lower_key for marker in _SENSITIVE_LOG_KEYS):
            continue
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = (
                value[:2] + "***" + value[-2:] if len(value) > 8 else "***"
            )
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
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


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger that carries the request correlation id."""
    return structlog.get_logger(name)


_SENSITIVE_MESSAGE_PATTERNS = [
    re.compile(r"(?i)(password|secret|token|pin|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
    re.compile(r"(?i)(select|insert|update|delete)\s+.{0,50}"),
]

_SENSITIVE_DETAIL_KEYS = frozenset({
    "password",
    "pin",
    "pin_hash",
    "password_hash",
    "secret",
    "token",
    "access_token",
    "refresh_token",
    "csrf_token",
    "authorization",
    "cookie",
})


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credentials, paths and SQL fragments from an error message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_MESSAGE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result


def redact_sensitive(data: Any, *, depth: int = 0, max_depth: int = 10) -> Any:
    """Return a copy of ``data`` with credential-valued keys replaced.

    Used on audit event details so that a caller passing a raw request body
    cannot persist a password or token into the append-only log.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        cleaned: Dict[str, Any] = {}
        for key, value in data.items():
            normalized = str(key).lower().replace("-", "_")
            if normalized in _SENSITIVE_DETAIL_KEYS:
                cleaned[key] = "[REDACTED]"
            else:
                cleaned[key] = redact_sensitive(value, depth=depth + 1, max_depth=max_depth)
        return cleaned
    if isinstance(data, list):
        return [redact_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
