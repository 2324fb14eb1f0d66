"""
Structured logging configuration for chatgate.

Provides JSON-formatted structured logging with:
- Redaction of recipients, message bodies and scan challenges
- Security filtering (no secrets/credentials)
- Low-cardinality fields (normalized paths, no raw payloads)

Usage:
    from chatgate.logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.info("message", extra={"key": "value"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")

# Order matters: chat ids must be caught before the generic email pattern
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Chat-network ids: 919876543210@c.us, 120363-1600@g.us
    (re.compile(r"\d{5,20}(?:-\d+)?@[cg]\.us"), "[CHAT_ID]"),
    # Bearer tokens
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    # Authorization headers
    (re.compile(r"(authorization|auth)[=:\s]+['\"]?[\w\-\.\s]+['\"]?", re.I), "[AUTH]"),
    # IP addresses (v4)
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
    # Email addresses
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
    # Phone numbers, international or local
    (re.compile(r"\+?\b\d[\d\s\-]{8,18}\d\b"), "[PHONE]"),
]

# Fields that should NEVER appear in logs
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        # Credentials
        "secret",
        "token",
        "password",
        "auth",
        "authorization",
        "bearer",
        "credential",
        # Session challenge (scanning it links a device)
        "challenge",
        "qr",
        # PII
        "recipient",
        "number",
        "phone",
        "chat_id",
        "wid",
        "ip",
        "email",
        "user_agent",
    }
)

# Fields that are high-cardinality and should be normalized
HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",  # Extract path only
    "body": "[BODY]",  # Redact entirely
    "content": "[BODY]",
    "payload": "[PAYLOAD]",
    "params": "[PARAMS]",
}

_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _normalize_url(url: str) -> str:
    """Extract normalized endpoint path from URL."""
    from urllib.parse import urlsplit

    parts = urlsplit(url)
    return parts.path or "/"


def _sanitize_url_in_text(match: re.Match[str]) -> str:
    url = match.group(1)
    path = _normalize_url(url)
    return path if path != "/" else "[URL]"


def _sanitize_text(text: str) -> str:
    """Sanitize free-form text (msg, exc) to remove sensitive data.

    Removes/normalizes:
    - URLs with query strings → path only
    - Chat ids and phone numbers → [CHAT_ID] / [PHONE]
    - Tokens, auth headers → [TOKEN] / [AUTH]
    - IP addresses, emails → [IP] / [EMAIL]
    """
    if not text:
        return text

    result = _URL_PATTERN.sub(_sanitize_url_in_text, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive and high-cardinality fields from log record.

    Recursively filters nested dicts up to depth 3.
    """
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}

    for key, value in record.items():
        key_lower = key.lower()

        # Exact or partial match on a blocked word
        if any(blocked in key_lower for blocked in BLOCKED_FIELDS):
            continue

        if key_lower in HIGH_CARDINALITY_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered["endpoint"] = _normalize_url(value)
            else:
                filtered[key] = HIGH_CARDINALITY_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            if len(value) <= 10:
                filtered[key] = [_sanitize_text(v) if isinstance(v, str) else v for v in value]
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))

    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


class JsonFormatter(logging.Formatter):
    """JSON log formatter, one object per line.

    Output format:
    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"module","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            log_dict["exc"] = _sanitize_text(self.formatException(record.exc_info))

        extra = _extra_fields(record)
        if extra:
            log_dict.update(_filter_log_record(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for development, with the same filtering."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"

        extra = _extra_fields(record)
        if extra:
            filtered = _filter_log_record(extra)
            if filtered:
                extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
                base = f"{base} | {extra_str}"

        if record.exc_info:
            base = f"{base}\n{_sanitize_text(self.formatException(record.exc_info))}"

        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Configure structured logging for the gateway.

    Call once at startup.

    Args:
        level: Log level (default INFO).
        json_format: Use JSON formatter (default True for production).
        stream: Output stream (default stderr).
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically get_logger(__name__))."""
    return logging.getLogger(name)
