from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional, Dict, List, Any
from datetime import datetime
from loggr.core.sanitization import parse_additional_data


class ConsoleErrorResponse(BaseModel):
    """Stored error record as returned by the admin API"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    error_type: str
    error_message: str
    error_source: Optional[str] = None
    error_line: Optional[int] = None
    error_column: Optional[int] = None
    page_url: Optional[str] = None
    user_ip: Optional[str] = None
    user_id: Optional[int] = None
    associated_user_id: Optional[int] = None
    session_id: Optional[str] = None
    is_login_page: bool = False


class ConsoleErrorDetailResponse(ConsoleErrorResponse):
    """Full record including stack trace and additional data"""
    stack_trace: Optional[str] = None
    user_agent: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None

    @field_validator("additional_data", mode="before")
    @classmethod
    def decode_additional_data(cls, v):
        return parse_additional_data(v)


class PaginatedConsoleErrorResponse(BaseModel):
    errors: List[ConsoleErrorResponse]
    total_count: int
    limit: int
    offset: int


class TypeCount(BaseModel):
    error_type: str
    count: int


class ErrorStatsResponse(BaseModel):
    total: int
    by_type: List[TypeCount]
    recent_24h: int
    login_errors: int
    last_error_time: Optional[datetime] = None


class LoginStatsResponse(BaseModel):
    successful_logins: int
    failed_logins: int
    failed_by_type: List[TypeCount]
    top_failed_ips: List[Dict[str, Any]]
    most_targeted_users: List[Dict[str, Any]]
