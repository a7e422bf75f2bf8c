"""Property tests for structured logging.

Every entry is a JSON object with level, timestamp, logger and message;
scan context passed through ``extra`` is carried over; proxy credentials
never reach the output.
"""

from __future__ import annotations

import json
import logging

from hypothesis import given, settings, strategies as st

from panelscan.logging_config import JsonFormatter


# --- Strategies ---

messages = st.text(min_size=1, max_size=100, alphabet="abcdefghijklmnopqrstuvwxyz0123456789 ._-/")
levels = st.sampled_from(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
scan_domains = st.sampled_from(["gs", "sr", "zzz"])
uids = st.integers(min_value=10_000_000, max_value=9_999_999_999)
proxy_urls = st.integers(min_value=1024, max_value=65535).map(lambda p: f"http://127.0.0.1:{p}")
durations = st.floats(min_value=0.1, max_value=60000.0, allow_nan=False, allow_infinity=False)
backoff_levels = st.integers(min_value=0, max_value=10)


def _make_record(message: str, level: str = "INFO", **extra: object) -> logging.LogRecord:
    """Create a LogRecord with optional extra attributes."""
    record = logging.LogRecord(
        name="panelscan.test",
        level=getattr(logging, level),
        pathname="test.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# --- Structured format ---

@settings(max_examples=100)
@given(message=messages, level=levels)
def test_structured_log_format_basic(message: str, level: str) -> None:
    """Each entry is valid JSON with the required fields."""
    output = JsonFormatter().format(_make_record(message, level=level))
    parsed = json.loads(output)

    assert parsed["level"] == level
    assert parsed["logger"] == "panelscan.test"
    assert "timestamp" in parsed
    assert "message" in parsed


@settings(max_examples=100)
@given(
    message=messages,
    domain=scan_domains,
    uid=uids,
    proxy_used=proxy_urls,
    duration_ms=durations,
    backoff_level=backoff_levels,
)
def test_scan_context_fields_carried(
    message: str,
    domain: str,
    uid: int,
    proxy_used: str,
    duration_ms: float,
    backoff_level: int,
) -> None:
    """Scan fields passed via ``extra`` appear unchanged in the entry."""
    record = _make_record(
        message,
        domain=domain,
        uid=uid,
        proxy_used=proxy_used,
        duration_ms=duration_ms,
        backoff_level=backoff_level,
    )
    parsed = json.loads(JsonFormatter().format(record))

    assert parsed["domain"] == domain
    assert parsed["uid"] == uid
    assert parsed["proxy_used"] == proxy_used
    assert parsed["duration_ms"] == duration_ms
    assert parsed["backoff_level"] == backoff_level


@settings(max_examples=50)
@given(message=messages)
def test_unknown_extra_fields_dropped(message: str) -> None:
    record = _make_record(message, node_descriptor={"password": "x"})
    assert "node_descriptor" not in json.loads(JsonFormatter().format(record))


# --- No credentials in logs ---

secret_values = st.text(min_size=8, max_size=32, alphabet="abcdefghijklmnopqrstuvwxyz0123456789")
secret_prefixes = st.sampled_from([
    "password=",
    "passwd=",
    "uuid=",
    "id=",
    "secret=",
    "token=",
    "credential=",
    "authorization: ",
])


@settings(max_examples=100)
@given(secret_value=secret_values, prefix=secret_prefixes)
def test_no_credentials_in_message(secret_value: str, prefix: str) -> None:
    """Credential-like values in the message are redacted."""
    tainted = f"Node rejected with {prefix}{secret_value} in descriptor"
    parsed = json.loads(JsonFormatter().format(_make_record(tainted, level="ERROR")))

    assert secret_value not in parsed["message"]
    assert "[REDACTED]" in parsed["message"]


@settings(max_examples=100)
@given(secret_value=secret_values, prefix=secret_prefixes)
def test_no_credentials_in_error_reason(secret_value: str, prefix: str) -> None:
    record = _make_record("probe failed", level="WARNING", error_reason=f"{prefix}{secret_value}")
    parsed = json.loads(JsonFormatter().format(record))

    assert secret_value not in parsed["error_reason"]
