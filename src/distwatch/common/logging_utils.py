"""Logging helpers shared by every distwatch module.

Provides one place to configure the root handler and small utilities for
structured ``extra=`` payloads, debug gating, timing and URL redaction so log
lines never carry registry credentials.
"""
from __future__ import annotations

import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from ..constants import Constants

_SENSITIVE_QUERY_KEYS = {"token", "access_token", "auth", "key", "password", "secret"}
_TOKEN_PATTERN = re.compile(r"(?i)(bearer\s+|token[=:]\s*)[A-Za-z0-9._\-]+")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once.

    The level comes from the argument, then ``DISTWATCH_LOG_LEVEL``, then INFO.
    """
    level_name = (level or os.environ.get(f"{Constants.ENV_PREFIX}LOG_LEVEL") or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level_value)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping fields that are None."""
    return {key: value for key, value in fields.items() if value is not None}


def is_debug_enabled(logger: logging.Logger) -> bool:
    return logger.isEnabledFor(logging.DEBUG)


def redact(text: str) -> str:
    """Mask bearer tokens and token assignments inside free text."""
    return _TOKEN_PATTERN.sub(lambda m: f"{m.group(1)}[REDACTED]", text)


def safe_url(url: str) -> str:
    """Return ``url`` with userinfo and sensitive query values masked."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = urllib.parse.urlencode(
            [(k, "[REDACTED]" if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in pairs],
            safe="[]",
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
