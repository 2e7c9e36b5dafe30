from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id of the API call being served, echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one for this request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Log fields that carry credentials. Matched on the whole key or its suffix so
# identifiers and counters such as token_id or tokens stay readable.
_CREDENTIAL_KEYS = frozenset(
    {"password", "secret", "token", "authorization", "code", "backup_code", "temp_token"}
)
_CREDENTIAL_SUFFIXES = ("_token", "_password", "_secret")
_EMAIL_KEYS = frozenset({"email"})
_EMAIL_SUFFIXES = ("_email",)

REDACTED = "[redacted]"


def _is_credential_key(key: str) -> bool:
    return key in _CREDENTIAL_KEYS or key.endswith(_CREDENTIAL_SUFFIXES)


def _is_email_key(key: str) -> bool:
    return key in _EMAIL_KEYS or key.endswith(_EMAIL_SUFFIXES)


def mask_email(value: str) -> str:
    """Keep the first letter and the domain: ``alice@example.com`` -> ``a***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if _is_credential_key(lower_key):
            event_dict[key] = REDACTED
        elif _is_email_key(lower_key):
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the auth service and the session client.

    Unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE. JSON
    lines are the default; development mode switches to the colored console
    renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# What a storage failure may leak into a 409 or 500 message: the statement,
# the offending unique key value, the backend address and the state file path
_STORAGE_LEAK_PATTERNS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.*"),
    re.compile(r"(?i)\bkey \([^)]*\)=\([^)]*\)"),
    re.compile(r"(?i)\bconnection\b.*\b(failed|refused|timeout|timed out)\b"),
    re.compile(r"(?:/[\w.-]+){2,}"),
    re.compile(r"(?i)\b(password|secret|token|credential)s?\s*[:=]\s*\S+"),
]

_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(error: str, *, replacement: str = REDACTED) -> str:
    """Strip storage internals and credentials from a message bound for a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _STORAGE_LEAK_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
