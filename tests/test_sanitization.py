import json

import pytest

from loggr.core.sanitization import (
    ADDITIONAL_DATA_MAX_LENGTH, MESSAGE_MAX_LENGTH, STACK_TRACE_MAX_LENGTH, TRUNCATION_MARKER,
    URL_MAX_LENGTH, parse_additional_data, sanitize_client_record, sanitize_int, sanitize_stack_trace,
    sanitize_text, sanitize_url, serialize_additional_data, strip_markup,
)


def test_strip_markup_removes_scripts_and_tags():
    assert strip_markup("<b>bold</b> text") == "bold text"
    assert strip_markup("a<script>alert(1)</script>b") == "a[SCRIPT_REMOVED]b"
    # Nested tags that reassemble after one pass
    assert "<" not in strip_markup("<<b>script>alert(1)<</b>/script>")


def test_sanitize_text_caps_length():
    value = sanitize_text("x" * (MESSAGE_MAX_LENGTH + 500))
    assert len(value) == MESSAGE_MAX_LENGTH
    assert sanitize_text(None) is None
    assert sanitize_text(42) == "42"


@pytest.mark.parametrize("value", [
    "plain message",
    "<i>tagged</i> message " * 200,
    "password='hunter2' at /home/alice/app.py line 3",
])
def test_sanitizers_are_idempotent(value):
    once = sanitize_text(value)
    assert sanitize_text(once) == once

    trace = sanitize_stack_trace(value * 20)
    assert sanitize_stack_trace(trace) == trace


def test_stack_trace_redaction_and_truncation():
    trace = sanitize_stack_trace('File "/home/alice/app.py"\ntoken="abc123"\npassword: "pw"')
    assert "alice" not in trace
    assert "abc123" not in trace
    assert "/home/USER" in trace
    assert "[REDACTED]" in trace

    long_trace = sanitize_stack_trace("frame\n" * 1000)
    assert len(long_trace) <= STACK_TRACE_MAX_LENGTH
    assert long_trace.endswith(TRUNCATION_MARKER)


def test_sanitize_url_rejects_unsafe_schemes():
    assert sanitize_url("https://example.com/page?x=1") == "https://example.com/page?x=1"
    assert sanitize_url("/relative/path.js") == "/relative/path.js"
    assert sanitize_url("javascript:alert(1)") == ""
    assert sanitize_url("data:text/html,hi") == ""
    assert len(sanitize_url("https://example.com/" + "a" * 1000)) == URL_MAX_LENGTH


def test_sanitize_int():
    assert sanitize_int("12") == 12
    assert sanitize_int(-7) == 7
    assert sanitize_int("abc") is None
    assert sanitize_int("") is None
    assert sanitize_int(float("inf")) is None
    assert sanitize_int(float("nan")) is None
    assert sanitize_int(2 ** 31 - 1) == 2 ** 31 - 1
    assert sanitize_int(99999999999999999999999) is None
    assert sanitize_int("9" * 5000) is None


def test_additional_data_round_trip_and_cap():
    assert parse_additional_data('{"a": 1}') == {"a": 1}
    assert parse_additional_data("not json") == {"raw": "not json"}
    assert parse_additional_data("[1, 2]") == {"value": [1, 2]}
    assert parse_additional_data(None) is None

    small = serialize_additional_data({"note": "<b>hi</b>"})
    assert json.loads(small) == {"note": "hi"}

    big = serialize_additional_data({"blob": "y" * 5000})
    assert len(big) <= ADDITIONAL_DATA_MAX_LENGTH
    parsed = json.loads(big)
    assert parsed["_truncated"] is True


def test_client_record_whitelist():
    record = sanitize_client_record({
        "error_type": "error",
        "error_message": "<script>x</script>boom",
        "additional_data": {"k": "v"},
        "password": "secret",
        "session_id": "cel_1_abc",
    })
    assert "password" not in record
    assert record["error_message"] == "[SCRIPT_REMOVED]boom"
    assert json.loads(record["additional_data"]) == {"k": "v"}
    assert record["session_id"] == "cel_1_abc"
