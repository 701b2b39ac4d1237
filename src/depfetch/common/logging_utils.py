"""Logging configuration and structured-logging helpers.

Kept dependency-light so every module (including the HTTP transport) can
import it without cycles.
"""
from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from depfetch.constants import Constants

_SENSITIVE_PARAMS = {"token", "access_token", "api_key", "apikey", "key", "password", "secret"}
_USERINFO_RE = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def configure_logging() -> None:
    """Configure the root logger from ``DEPFETCH_LOG_LEVEL`` (default INFO)."""
    level_name = os.environ.get("DEPFETCH_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` payload for structured log records, dropping None values."""
    return {key: value for key, value in fields.items() if value is not None}


def redact(text: Optional[str]) -> str:
    """Remove credentials embedded in URLs inside free-form text."""
    if not text:
        return ""
    return _USERINFO_RE.sub(r"\g<scheme>[REDACTED]@", str(text))


def safe_url(url: Optional[str]) -> str:
    """Return ``url`` with userinfo and sensitive query parameters redacted."""
    if not url:
        return ""
    try:
        parts = urlsplit(str(url))
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = [
            (k, "[REDACTED]" if k.lower() in _SENSITIVE_PARAMS else v)
            for k, v in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="[],")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall-clock duration."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000.0, 2)
