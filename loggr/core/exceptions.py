"""Error taxonomy shared by the ingestion pipeline and the admin API."""
from typing import Any, Dict, Optional


class LoggrError(Exception):
    """Base class for every error raised by loggr itself."""

    client_message = "Request failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.client_message)
        self.message = message or self.client_message
        self.details = details or {}


class ValidationError(LoggrError):
    """Missing, oversized or malformed input. The message is shown to the caller."""

    client_message = "Invalid request data"


class SecurityError(LoggrError):
    """Bad or missing nonce/token. Callers only ever see a generic message."""

    client_message = "Invalid security token"

    def __init__(self, reason: Optional[str] = None):
        super().__init__(self.client_message, {"reason": reason} if reason else None)
        self.reason = reason


class StorageError(LoggrError):
    """Insert or query failure in the storage engine."""

    client_message = "Failed to log error"


class IgnoredByPolicy(LoggrError):
    """Not a failure: the record matched an active ignore pattern."""

    client_message = "Error ignored due to active ignore pattern"

    def __init__(self, pattern_id: Optional[int] = None):
        super().__init__(self.client_message, {"pattern_id": pattern_id})
        self.pattern_id = pattern_id


class RateLimited(LoggrError):
    """Silent drop. Never reported back to the client as an error."""

    client_message = "Rate limit exceeded"
