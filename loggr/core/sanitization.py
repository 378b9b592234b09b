"""Sanitization rules for error record fields.

Every function here is idempotent: running a value through it twice gives the
same result as running it once. The client SDK and the ingestion service share
these rules so a record sanitized on the client is left untouched by the server.
"""
import json
import math
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = 2000
STACK_TRACE_MAX_LENGTH = 2000
ADDITIONAL_DATA_MAX_LENGTH = 1000
USER_AGENT_MAX_LENGTH = 1000
URL_MAX_LENGTH = 255
ERROR_TYPE_MAX_LENGTH = 50
SESSION_ID_MAX_LENGTH = 255
RESPONSE_SNIPPET_MAX_LENGTH = 500
# Signed 32-bit, the range of an SQL INTEGER column
MAX_INT_VALUE = 2 ** 31 - 1

TRUNCATION_MARKER = "\n... (truncated)"

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")

_SECRET_PATTERNS = [
    (re.compile(r"/home/[^/\s]+"), "/home/USER"),
    (re.compile(r"C:\\Users\\[^\\\s]+"), r"C:\\Users\\USER"),
    (re.compile(r"password[\"']?\s*[:=]\s*[\"'][^\"']+[\"']", re.IGNORECASE), "password: [REDACTED]"),
    (re.compile(r"token[\"']?\s*[:=]\s*[\"'][^\"']+[\"']", re.IGNORECASE), "token: [REDACTED]"),
    (re.compile(r"api[_-]?key[\"']?\s*[:=]\s*[\"'][^\"']+[\"']", re.IGNORECASE), "api_key: [REDACTED]"),
]

_ALLOWED_URL_SCHEMES = ("http", "https", "")


def strip_markup(value: str) -> str:
    """Remove script blocks and tags until nothing is left to remove."""
    previous = None
    while previous != value:
        previous = value
        value = _SCRIPT_RE.sub("[SCRIPT_REMOVED]", value)
        value = _TAG_RE.sub("", value)
    return value


def sanitize_text(value: Any, max_length: int = MESSAGE_MAX_LENGTH) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = strip_markup(value).strip()
    return value[:max_length].strip()


def redact_secrets(value: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def sanitize_stack_trace(value: Any, max_length: int = STACK_TRACE_MAX_LENGTH) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    # Redaction can grow a value and truncation can expose a new partial match,
    # so iterate until stable.
    for _ in range(5):
        cleaned = redact_secrets(strip_markup(value)).strip()
        if len(cleaned) > max_length:
            cleaned = cleaned[:max_length - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER
        if cleaned == value:
            break
        value = cleaned
    return value


def sanitize_url(value: Any, max_length: int = URL_MAX_LENGTH) -> Optional[str]:
    """Keep http(s) and relative URLs, drop everything else (javascript:, data:, ...)."""
    if value is None:
        return None
    value = sanitize_text(value, max_length=max_length * 4)
    if not value:
        return value
    value = "".join(ch for ch in value if ch.isprintable() and not ch.isspace())
    try:
        scheme = urlparse(value).scheme.lower()
    except ValueError:
        return ""
    if scheme not in _ALLOWED_URL_SCHEMES:
        return ""
    return value[:max_length]


def sanitize_int(value: Any) -> Optional[int]:
    """Non-negative integer that fits a 32-bit INTEGER column, or None."""
    if value is None or value == "":
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        number = abs(int(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return number if number <= MAX_INT_VALUE else None


def _clean_json_value(value: Any) -> Any:
    if isinstance(value, str):
        return strip_markup(value)
    if isinstance(value, dict):
        return {str(k): _clean_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean_json_value(v) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return strip_markup(str(value))


def parse_additional_data(value: Any) -> Optional[Dict[str, Any]]:
    """Turn a stored or submitted additional_data value back into a map."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return {"raw": value}
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}
    return {"value": value}


def serialize_additional_data(value: Any, max_length: int = ADDITIONAL_DATA_MAX_LENGTH) -> Optional[str]:
    """Serialize additional_data to JSON no longer than max_length.

    Oversized maps are replaced with {"_truncated": true, "raw": <prefix>} so the
    stored value is always valid JSON.
    """
    data = parse_additional_data(value)
    if data is None:
        return None
    try:
        serialized = json.dumps(_clean_json_value(data))
    except (TypeError, ValueError) as e:
        logger.debug(f"additional_data serialization failed: {str(e)}")
        serialized = json.dumps({"raw": "[Object serialization failed]"})
    if len(serialized) <= max_length:
        return serialized

    prefix = serialized
    while True:
        truncated = json.dumps({"_truncated": True, "raw": prefix})
        if len(truncated) <= max_length:
            return truncated
        overflow = len(truncated) - max_length
        prefix = prefix[:max(0, len(prefix) - max(overflow, 1))]


CLIENT_ALLOWED_FIELDS = (
    'error_type', 'error_message', 'error_source', 'error_line', 'error_column',
    'stack_trace', 'timestamp', 'additional_data', 'session_id', 'page_url',
    'user_agent', 'is_login_page'
)


def sanitize_client_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Whitelist and cap a record before it leaves the client."""
    sanitized = {}
    for key in CLIENT_ALLOWED_FIELDS:
        if key not in record:
            continue
        value = record[key]
        if isinstance(value, str):
            value = strip_markup(value)[:MESSAGE_MAX_LENGTH]
        elif isinstance(value, (dict, list)):
            try:
                value = json.dumps(value)[:ADDITIONAL_DATA_MAX_LENGTH]
            except (TypeError, ValueError):
                value = "[Object serialization failed]"
        sanitized[key] = value
    return sanitized
