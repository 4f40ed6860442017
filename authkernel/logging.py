from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# Field names whose string values never reach a log line
_SECRET_KEY_PARTS = ("password", "secret", "token", "credential", "authorization")
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    """Correlation id bound to the action currently being handled, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def hash_email(email: str) -> str:
    """Stable digest used in place of an email address in log fields."""
    return hashlib.sha256(email.encode()).hexdigest()


def _redact_auth_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Blank credential-bearing string fields and keep only the domain of emails.

    Keys ending in ``_hash`` are digests and pass through untouched.
    """
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith("_hash"):
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = _REDACTED
        elif "email" in lower_key:
            _, at, domain = value.rpartition("@")
            event_dict[key] = f"***@{domain}" if at else _REDACTED
    return event_dict


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Install the structlog pipeline.

    ``level`` defaults to ``LOG_LEVEL`` (INFO) and ``fmt`` to ``LOG_FORMAT``;
    ``"console"`` selects the human-readable renderer, anything else JSON.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).lower()

    if fmt == "console":
        renderer = [structlog.dev.ConsoleRenderer(colors=False)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_auth_fields,
            *renderer,
        ],
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


# Store and driver error text that must not surface in a response message
_ERROR_SCRUBBERS = [
    # libpq conninfo, in URI or keyword form
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)\b(?:password|user|host|dbname)\s*=\s*\S+"),
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    re.compile(r'(?i)(?:relation|column|table)\s+"[^"]+"'),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|run)/\S+"),
    re.compile(r"(?i)\b(?:secret|token|credential)\s*[:=]\s*\S+"),
]
_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = _REDACTED) -> str:
    """Scrub connection strings, SQL, paths and credentials from ``error``.

    Non-string or empty input becomes a generic message; output is capped
    at 300 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
