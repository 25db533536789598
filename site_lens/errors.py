"""
Error taxonomy for SiteLens.

Every failure that can degrade a page or an engine carries a machine-readable
``code`` (``timeout``, ``network``, ``quota_exceeded``, ``missing_api_key``,
``unknown``). Pages and engines convert these into degraded result objects;
only the HTTP layer ever sees an unclassified exception.
"""
from __future__ import annotations

import asyncio
import re
from typing import Optional

__all__ = (
    "SiteLensError",
    "StageTimeoutError",
    "NetworkError",
    "QuotaExceededError",
    "MissingApiKeyError",
    "ConfigurationError",
    "InvalidScanRequestError",
    "sanitize_error_message",
    "error_code",
)

MAX_ERROR_MESSAGE = 260

_WHITESPACE_RE = re.compile(r"\s+")


class SiteLensError(Exception):
    """Base class; ``code`` is what ends up in report ``reason`` fields."""

    code = "unknown"


class StageTimeoutError(SiteLensError):
    """A stage exceeded the slice of the time budget it was given."""

    code = "timeout"

    def __init__(self, stage: str, timeout_ms: int) -> None:
        super().__init__(f"{stage} timed out after {timeout_ms}ms")
        self.stage = stage
        self.timeout_ms = timeout_ms


class NetworkError(SiteLensError):
    code = "network"


class QuotaExceededError(SiteLensError):
    code = "quota_exceeded"


class MissingApiKeyError(SiteLensError):
    code = "missing_api_key"


class ConfigurationError(SiteLensError):
    code = "configuration"


class InvalidScanRequestError(SiteLensError, ValueError):
    code = "invalid_request"


def sanitize_error_message(error: object, limit: int = MAX_ERROR_MESSAGE) -> str:
    """Collapse whitespace and cap the length of an error for user-facing output."""
    if isinstance(error, BaseException):
        raw = str(error) or type(error).__name__
    else:
        raw = str(error) if error is not None else ""
    text = _WHITESPACE_RE.sub(" ", raw or "Unknown error").strip()
    return text[:limit]


def error_code(error: Optional[BaseException]) -> str:
    """Map an exception onto the report taxonomy."""
    if error is None:
        return "unknown"
    if isinstance(error, SiteLensError):
        return error.code
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    return "unknown"
