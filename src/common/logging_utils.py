"""Logging helpers shared by every module.

Provides centralized configuration, structured ``extra=`` payloads and small
utilities (URL redaction, timing) so call sites stay one-liners.
"""
from __future__ import annotations

import logging
import os
import re
import sys
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from constants import Constants

_SENSITIVE_KEYS = ("token", "secret", "password", "passwd", "auth", "key", "signature")
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()) | {"message", "asctime"}
_CONTEXT_FIELDS = (
    "event", "component", "action", "outcome", "package", "target",
    "status_code", "duration_ms", "attempt",
)
_BEARER_RE = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*")


class ContextFormatter(logging.Formatter):
    """Formatter that appends structured context fields when DEBUG is enabled."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if record.levelno > logging.DEBUG:
            return base
        parts = []
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                parts.append(f"{name}={value}")
        if not parts:
            return base
        return f"{base} ({', '.join(parts)})"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None, quiet: bool = False) -> None:
    """Configure the root logger.

    Level precedence: explicit argument, then ``BOXPM_LOG_LEVEL``, then INFO.

    Args:
        level: Level name such as "DEBUG".
        log_file: Optional file to mirror log output into.
        quiet: Suppress console output.
    """
    level_name = (level or os.environ.get(f"{Constants.ENV_PREFIX}LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = ContextFormatter(Constants.LOG_FORMAT)
    if not quiet:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    if not root.handlers:
        root.addHandler(logging.NullHandler())
    root.setLevel(getattr(logging, level_name, logging.INFO))


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping None values and renaming reserved keys."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key in _RESERVED_ATTRS:
            key = f"ctx_{key}"
        out[key] = value
    return out


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def redact(text: str) -> str:
    """Mask bearer tokens embedded in free text."""
    if not text:
        return text
    return _BEARER_RE.sub(r"\1[REDACTED]", text)


def safe_url(url: str) -> str:
    """Return ``url`` with credentials and sensitive query parameters masked."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = []
        for key, value in parse_qsl(query, keep_blank_values=True):
            if any(s in key.lower() for s in _SENSITIVE_KEYS):
                value = "[REDACTED]"
            pairs.append((key, value))
        query = urlencode(pairs, safe="[]")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._end = time.monotonic()

    def duration_ms(self) -> int:
        """Elapsed milliseconds, live while the block is still running."""
        end = self._end if self._end is not None else time.monotonic()
        return int((end - self._start) * 1000)
