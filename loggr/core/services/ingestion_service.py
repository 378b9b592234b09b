"""Server side ingestion of client error reports.

Pipeline for one submission, in order: payload checks, JSON parse, required
fields, type normalization, sanitization, enrichment from the request, ignore
patterns, IP to user back-fill, per-IP rate limit, insert, eviction and cache
invalidation, critical notification.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from loggr.core.config import config
from loggr.core.exceptions import IgnoredByPolicy, RateLimited, ValidationError
from loggr.core.request_context import RequestContext, is_login_page_url
from loggr.core.sanitization import (
    ERROR_TYPE_MAX_LENGTH, RESPONSE_SNIPPET_MAX_LENGTH, SESSION_ID_MAX_LENGTH, USER_AGENT_MAX_LENGTH,
    parse_additional_data, sanitize_int, sanitize_stack_trace, sanitize_text, sanitize_url,
    serialize_additional_data,
)
from loggr.core.services.cache_service import SESSION_PREFIX
from loggr.core.services.critical_notifier import CriticalNotifier, is_critical
from loggr.core.services.ignore_matcher import find_matching_pattern
from loggr.core.utils import create_random_key
from loggr.database.models.console_error import ConsoleError
from loggr.database.repositories.console_error_repository import ConsoleErrorRepository
from loggr.database.repositories.ignore_pattern_repository import IgnorePatternRepository
from loggr.database.repositories.ip_mapping_repository import IpMappingRepository
from loggr.schemas.settings import Settings

logger = logging.getLogger(__name__)

SESSION_TTL = 3600
BACKFILL_WINDOW_MINUTES = 30
DEFAULT_LOGIN_TIMEOUT = 10
LOGIN_PAGE_URL = "/wp-login.php"

ERROR_TYPE_MAP = {
    'error': 'javascript_error',
    'unhandledrejection': 'unhandled_rejection',
    'console.error': 'console_error',
    'console.warn': 'console_warning',
    'ajax_error': 'ajax_error',
    'fetch_error': 'fetch_error',
    'resource_error': 'resource_error',
    'login_timeout': 'login_timeout',
    'syntax_error': 'javascript_error',
    'type_error': 'javascript_error',
    'reference_error': 'javascript_error',
}

NETWORK_ERROR_TYPES = ('ajax_error', 'fetch_error')
NETWORK_FIELDS = ('request_url', 'request_method', 'response_status', 'response_text')

_LINE_RE = re.compile(r"line (\d+)", re.IGNORECASE)
_COLUMN_RE = re.compile(r"column (\d+)", re.IGNORECASE)
_USERNAME_RE = re.compile(r"[^a-zA-Z0-9 _.\-@]")


def normalize_error_type(error_type: Any) -> str:
    """Map client type names onto stored categories; unknown types pass through lower-cased."""
    key = str(error_type or "").strip().lower()
    return ERROR_TYPE_MAP.get(key, key)[:ERROR_TYPE_MAX_LENGTH]


def parse_error_details(details: Any) -> Tuple[Optional[int], Optional[int]]:
    """Pull 'line N' / 'column N' out of a free-form details string."""
    if not isinstance(details, str):
        return None, None
    line = _LINE_RE.search(details)
    column = _COLUMN_RE.search(details)
    return (sanitize_int(line.group(1)) if line else None,
            sanitize_int(column.group(1)) if column else None)


def sanitize_username(value: Any) -> str:
    if value is None:
        return ""
    return _USERNAME_RE.sub("", sanitize_text(value, max_length=60) or "").strip()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def parse_payload(raw: Optional[str], max_bytes: int = config.MAX_PAYLOAD_BYTES) -> Dict[str, Any]:
    """
    Validate and decode the raw `error_data` form field

    Raises:
        ValidationError: empty, oversized, undecodable or missing required fields
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError("No error data provided")
    if len(raw.encode("utf-8")) > max_bytes:
        raise ValidationError("Error data payload too large")

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        raise ValidationError("Invalid error data format")
    if not isinstance(data, dict) or not data:
        raise ValidationError("Invalid error data format")

    for field in ("error_type", "error_message"):
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError("Missing required error fields")
    return data


class IngestionService:
    def __init__(self,
                 db: AsyncSession,
                 settings: Settings,
                 cache=None,
                 notifier: Optional[CriticalNotifier] = None,
                 ignore_priority: Optional[Sequence[str]] = None,
                 rate_limit: int = config.RATE_LIMIT_PER_MINUTE,
                 max_payload_bytes: int = config.MAX_PAYLOAD_BYTES):
        self.db = db
        self.settings = settings
        self.cache = cache
        self.notifier = notifier
        self.ignore_priority = ignore_priority if ignore_priority is not None else config.IGNORE_PATTERN_PRIORITY
        self.rate_limit = rate_limit
        self.max_payload_bytes = max_payload_bytes

        self.errors = ConsoleErrorRepository(db, cache)
        self.ip_mappings = IpMappingRepository(db)
        self.ignore_patterns = IgnorePatternRepository(db)

    async def _session_id_for(self, context: RequestContext) -> str:
        key = f"{SESSION_PREFIX}{context.fingerprint}"
        if self.cache is not None:
            existing = await self.cache.get(key)
            if existing:
                return existing
        session_id = f"cel_{create_random_key(32)}"
        if self.cache is not None:
            await self.cache.set(key, session_id, expire=SESSION_TTL)
        return session_id

    async def process_error_data(self, data: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Normalize, sanitize and enrich a decoded payload into storable column values."""
        error_type = normalize_error_type(data.get("error_type"))

        page_url = sanitize_url(data.get("page_url")) if data.get("page_url") else None
        if not page_url:
            page_url = sanitize_url(context.referer) or ""

        if "is_login_page" in data and data.get("is_login_page") is not None:
            is_login_page = _as_bool(data.get("is_login_page"))
        else:
            is_login_page = is_login_page_url(page_url)

        session_id = sanitize_text(data.get("session_id"), max_length=SESSION_ID_MAX_LENGTH)
        if not session_id:
            session_id = await self._session_id_for(context)

        error_line = sanitize_int(data.get("error_line"))
        error_column = sanitize_int(data.get("error_column"))
        if data.get("error_details"):
            detail_line, detail_column = parse_error_details(data.get("error_details"))
            if error_line is None:
                error_line = detail_line
            if error_column is None:
                error_column = detail_column

        additional = parse_additional_data(data.get("additional_data")) or {}
        if error_type in NETWORK_ERROR_TYPES:
            for field in NETWORK_FIELDS:
                if data.get(field) is None:
                    continue
                value = data[field]
                if field == "response_text":
                    value = sanitize_text(value, max_length=RESPONSE_SNIPPET_MAX_LENGTH)
                elif field == "request_url":
                    value = sanitize_url(value)
                elif field == "response_status":
                    value = sanitize_int(value)
                else:
                    value = sanitize_text(value, max_length=16)
                additional[field] = value
        if error_type == "login_timeout":
            # Top-level fields win, values the client nested in additional_data are the fallback
            additional["timeout_duration"] = (sanitize_int(data.get("timeout_duration"))
                                              or sanitize_int(additional.get("timeout_duration"))
                                              or DEFAULT_LOGIN_TIMEOUT)
            additional["username_attempted"] = sanitize_username(
                data.get("username") or additional.get("username_attempted") or additional.get("username"))

        return {
            "error_type": error_type,
            "error_message": sanitize_text(data.get("error_message")),
            "error_source": sanitize_url(data.get("error_source")),
            "error_line": error_line,
            "error_column": error_column,
            "stack_trace": sanitize_stack_trace(data.get("stack_trace")),
            "user_agent": sanitize_text(context.user_agent, max_length=USER_AGENT_MAX_LENGTH) or "",
            "page_url": page_url,
            "user_ip": context.client_ip,
            "user_id": context.user_id,
            "session_id": session_id,
            "is_login_page": is_login_page,
            "additional_data": serialize_additional_data(additional) if additional else None,
        }

    async def log_error(self, raw_error_data: Optional[str], context: RequestContext) -> ConsoleError:
        """
        Run one submission through the whole pipeline

        Raises:
            ValidationError: bad payload
            IgnoredByPolicy: matched an active ignore pattern, nothing stored
            RateLimited: this IP already hit the per-minute cap, nothing stored
            StorageError: insert failed
        """
        data = parse_payload(raw_error_data, self.max_payload_bytes)
        record = await self.process_error_data(data, context)
        if not record["error_message"]:
            raise ValidationError("Missing required error fields")

        patterns = await self.ignore_patterns.get_ignore_patterns(active_only=True,
                                                                  priority=self.ignore_priority)
        matched = find_matching_pattern(patterns, record)
        if matched is not None:
            logger.debug(f"Error ignored by pattern {matched.id}: {record['error_message'][:100]}")
            await self.ignore_patterns.record_ignored(matched.id)
            raise IgnoredByPolicy(matched.id)

        associated_user_id = await self.ip_mappings.get_associated_user_by_ip(context.client_ip)
        if associated_user_id:
            record["associated_user_id"] = associated_user_id

        if await self.errors.is_rate_limited(context.client_ip, threshold=self.rate_limit):
            logger.debug(f"Rate limit hit for {context.client_ip}, dropping error")
            raise RateLimited()

        stored = await self.errors.insert_error(record)
        await self.errors.check_and_cleanup(self.settings.max_log_entries)
        await self.errors.invalidate_stats_cache()

        if self.notifier is not None and is_critical(record):
            self.notifier.dispatch(record)
        return stored

    # Login tracking, called by the host platform's auth hooks

    async def track_login(self,
                          user_id: int,
                          username: str,
                          ip_address: str,
                          email: Optional[str] = None,
                          roles: Optional[List[str]] = None,
                          page_url: str = LOGIN_PAGE_URL) -> ConsoleError:
        username = sanitize_username(username)
        stored = await self.errors.insert_error({
            "error_type": "login_success",
            "error_message": f"User login: {username} (ID: {user_id})",
            "page_url": sanitize_url(page_url) or LOGIN_PAGE_URL,
            "user_id": user_id,
            "user_ip": ip_address,
            "is_login_page": True,
            "additional_data": serialize_additional_data({
                "event": "login",
                "username": username,
                "user_email": sanitize_text(email, max_length=255) or "",
                "user_role": ", ".join(roles or []),
            }),
        })
        await self.ip_mappings.track_user_ip(user_id, ip_address)
        await self.errors.backfill_associated_user(ip_address, user_id,
                                                   window_minutes=BACKFILL_WINDOW_MINUTES)
        await self.errors.check_and_cleanup(self.settings.max_log_entries)
        await self.errors.invalidate_stats_cache()
        logger.info(f"Tracked login for user {user_id} from {ip_address}")
        return stored

    async def track_failed_login(self,
                                 username: Optional[str],
                                 ip_address: str,
                                 user_id: Optional[int] = None,
                                 user_exists: bool = False,
                                 page_url: str = LOGIN_PAGE_URL) -> ConsoleError:
        username = sanitize_username(username)
        if user_exists:
            error_type = "login_failed_valid_user"
            message = f"Failed login attempt for existing user: {username}"
        elif username:
            error_type = "login_failed_invalid_user"
            message = f"Failed login attempt for non-existent user: {username}"
        else:
            error_type = "login_failed_empty"
            message = "Failed login attempt with empty username"

        stored = await self.errors.insert_error({
            "error_type": error_type,
            "error_message": message,
            "page_url": sanitize_url(page_url) or LOGIN_PAGE_URL,
            "user_id": user_id,
            "user_ip": ip_address,
            "is_login_page": True,
            "additional_data": serialize_additional_data({
                "event": "login_failed",
                "attempted_username": username,
                "user_exists": bool(user_exists),
                "authentication_failure": True,
            }),
        })
        if user_id and ip_address:
            await self.ip_mappings.track_user_ip(user_id, ip_address)
        await self.errors.check_and_cleanup(self.settings.max_log_entries)
        await self.errors.invalidate_stats_cache()
        logger.info(f"Tracked failed login ({error_type}) from {ip_address}")
        return stored
