"""Ignore pattern validation and matching.

Regex patterns come from administrators but are evaluated on every ingested
record, so they go through a structural safety check before being stored and
again before being compiled. A pattern that fails the check, or fails to
compile, simply never matches.
"""
import logging
import re
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional, Tuple

from loggr.core.exceptions import ValidationError
from loggr.database.models.ignore_pattern import PatternType

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 5000
MAX_QUANTIFIERS = 10

# {n}, {n,}, {n,m}
_BRACE_QUANTIFIER_RE = re.compile(r"\{\d+(?:,\d*)?\}")
_POSSESSIVE_RE = re.compile(r"(?<!\\)[+*?}]\+")
_ATOMIC_GROUP_RE = re.compile(r"\(\?>")
_BACKREFERENCE_RE = re.compile(r"\\[1-9]|\\k[<{']|\(\?P=")
_QUANTIFIER_RE = re.compile(r"(?<!\\)(?:[*+]|(?<!\()\?|\{\d+(?:,\d*)?\})")

_DELIMITED_RE = re.compile(r"^/(?P<body>.*)/(?P<flags>[a-zA-Z]*)$", re.DOTALL)
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}

# Types written by older installs, both meant substring
LEGACY_TYPES = {"message": PatternType.MESSAGE_CONTAINS.value,
                "source": PatternType.SOURCE_CONTAINS.value}


def split_delimited(pattern: str) -> Tuple[str, int]:
    """Accept both `body` and `/body/flags`; returns (body, re flags)."""
    match = _DELIMITED_RE.match(pattern)
    if not match or not match.group("body"):
        return pattern, 0
    flags = 0
    for flag in match.group("flags"):
        if flag not in _FLAG_MAP:
            # Not a delimiter pair after all, treat the whole value as the body
            return pattern, 0
        flags |= _FLAG_MAP[flag]
    return match.group("body"), flags


def _quantifier_at(body: str, index: int) -> bool:
    """Whether body[index:] starts with +, * or a {n}/{n,m} repeat."""
    if index >= len(body):
        return False
    if body[index] in "+*":
        return True
    return body[index] == "{" and _BRACE_QUANTIFIER_RE.match(body, index) is not None


def has_nested_quantifier(body: str) -> bool:
    """
    True when a group repeated with +, * or {..} contains a quantifier at any depth

    Walks the pattern with a group stack, skipping escapes and character
    classes. `((a+))+` and `(?:(a)+)+` are caught as well as `(a+)+`.
    """
    # One flag per open group: does it contain a quantifier anywhere inside
    stack = [False]
    i = 0
    length = len(body)
    while i < length:
        char = body[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            # Skip the class; a leading ] or ^] is literal
            i += 1
            if i < length and body[i] == "^":
                i += 1
            if i < length and body[i] == "]":
                i += 1
            while i < length and body[i] != "]":
                i += 2 if body[i] == "\\" else 1
            i += 1
            continue
        if char == "(":
            stack.append(False)
            i += 1
            if i < length and body[i] == "?":
                # Group modifier, not a quantifier
                i += 1
            continue
        if char == ")":
            inner = stack.pop() if len(stack) > 1 else False
            repeated = _quantifier_at(body, i + 1)
            if repeated and inner:
                return True
            if inner or repeated or (i + 1 < length and body[i + 1] == "?"):
                stack[-1] = True
            i += 1
            continue
        if char in "+*?" or _quantifier_at(body, i):
            stack[-1] = True
        i += 1
    return False


def validate_regex(pattern: str) -> Tuple[bool, Optional[str]]:
    """
    Structural safety check for a regex pattern

    Returns:
        (True, None) when safe, otherwise (False, reason)
    """
    if not pattern:
        return False, "Pattern is empty"
    if len(pattern) > MAX_PATTERN_LENGTH:
        return False, f"Pattern exceeds {MAX_PATTERN_LENGTH} characters"

    body, flags = split_delimited(pattern)

    if has_nested_quantifier(body):
        return False, "Nested quantifiers are not allowed"
    if _ATOMIC_GROUP_RE.search(body):
        return False, "Atomic groups are not allowed"
    if _POSSESSIVE_RE.search(body):
        return False, "Possessive quantifiers are not allowed"
    if _BACKREFERENCE_RE.search(body):
        return False, "Back-references are not allowed"
    if len(_QUANTIFIER_RE.findall(body)) > MAX_QUANTIFIERS:
        return False, f"More than {MAX_QUANTIFIERS} quantifiers"

    try:
        re.compile(body, flags)
    except re.error as e:
        return False, f"Invalid regular expression: {e}"
    return True, None


@lru_cache(maxsize=256)
def compile_safe_regex(pattern: str) -> Optional["re.Pattern[str]"]:
    valid, reason = validate_regex(pattern)
    if not valid:
        logger.warning(f"Skipping unsafe ignore regex: {reason}")
        return None
    body, flags = split_delimited(pattern)
    return re.compile(body, flags)


def pattern_matches(pattern_type: str, pattern_value: str, record: Mapping[str, Any]) -> bool:
    """Whether a single pattern suppresses the record. Never raises."""
    pattern_type = LEGACY_TYPES.get(pattern_type, pattern_type)
    message = record.get("error_message") or ""
    source = record.get("error_source") or ""

    try:
        if pattern_type == PatternType.EXACT_MESSAGE.value:
            return message == pattern_value
        if pattern_type == PatternType.MESSAGE_CONTAINS.value:
            return bool(pattern_value) and pattern_value in message
        if pattern_type == PatternType.EXACT_SOURCE.value:
            return source == pattern_value
        if pattern_type == PatternType.SOURCE_CONTAINS.value:
            return bool(pattern_value) and pattern_value in source
        if pattern_type == PatternType.TYPE.value:
            return record.get("error_type") == pattern_value
        if pattern_type == PatternType.REGEX.value:
            compiled = compile_safe_regex(pattern_value)
            return bool(compiled and compiled.search(message))
    except Exception as e:
        logger.warning(f"Ignore pattern evaluation failed ({pattern_type}): {str(e)}")
        return False

    logger.debug(f"Unknown ignore pattern type: {pattern_type}")
    return False


def find_matching_pattern(patterns: Iterable[Any], record: Mapping[str, Any]):
    """First pattern (in the given order) that matches, or None."""
    for pattern in patterns:
        if pattern_matches(pattern.pattern_type, pattern.pattern_value, record):
            return pattern
    return None


def is_known_pattern_type(pattern_type: str) -> bool:
    return pattern_type in {t.value for t in PatternType} or pattern_type in LEGACY_TYPES


def validate_pattern_definition(pattern_type: str, pattern_value: str) -> None:
    """
    Check an ignore pattern before it is stored

    Raises:
        ValidationError: unknown type, empty or oversized value, unsafe regex
    """
    if not is_known_pattern_type(pattern_type):
        raise ValidationError("Invalid pattern type")
    if not pattern_value or not pattern_value.strip():
        raise ValidationError("Pattern value is required")
    if len(pattern_value) > MAX_PATTERN_LENGTH:
        raise ValidationError(f"Pattern value exceeds {MAX_PATTERN_LENGTH} characters")
    if pattern_type == PatternType.REGEX.value:
        valid, reason = validate_regex(pattern_value)
        if not valid:
            raise ValidationError(f"Invalid regex pattern: {reason}")
