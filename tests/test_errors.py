# File: tests/test_errors.py
import asyncio

import pytest

from site_lens.errors import (
    ConfigurationError,
    InvalidScanRequestError,
    MissingApiKeyError,
    NetworkError,
    QuotaExceededError,
    StageTimeoutError,
    error_code,
    sanitize_error_message,
)


@pytest.mark.parametrize(
    "error,code",
    [
        (StageTimeoutError("navigation", 10_000), "timeout"),
        (NetworkError("connection reset"), "network"),
        (QuotaExceededError("daily quota"), "quota_exceeded"),
        (MissingApiKeyError("no key"), "missing_api_key"),
        (ConfigurationError("redis down"), "configuration"),
        (InvalidScanRequestError("bad body"), "invalid_request"),
        (asyncio.TimeoutError(), "timeout"),
        (KeyError("x"), "unknown"),
        (None, "unknown"),
    ],
)
def test_error_code(error, code):
    assert error_code(error) == code


def test_stage_timeout_message():
    error = StageTimeoutError("rule engine", 2_500)
    assert str(error) == "rule engine timed out after 2500ms"
    assert error.stage == "rule engine"
    assert error.timeout_ms == 2_500


def test_invalid_request_is_a_value_error():
    with pytest.raises(ValueError):
        raise InvalidScanRequestError("Scan request body must be a JSON object")


def test_sanitize_error_message():
    assert sanitize_error_message(RuntimeError("  net::ERR\n\tFAILED  ")) == "net::ERR FAILED"
    assert sanitize_error_message("") == "Unknown error"
    assert len(sanitize_error_message("x" * 1_000)) == 260
    assert sanitize_error_message("abcdef", limit=3) == "abc"
