from pydantic import BaseModel, field_validator
from typing import Optional

SETTINGS_OPTION_KEY = "cel_settings"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class Settings(BaseModel):
    """Runtime settings stored in the options table. Out of range numbers are clamped, not rejected."""
    enable_login_monitoring: bool = True
    enable_site_monitoring: bool = False
    login_timeout_seconds: int = 10
    max_log_entries: int = 1000
    auto_cleanup_days: int = 30

    @field_validator("login_timeout_seconds")
    @classmethod
    def clamp_login_timeout(cls, v: int) -> int:
        return _clamp(v, 5, 60)

    @field_validator("max_log_entries")
    @classmethod
    def clamp_max_entries(cls, v: int) -> int:
        return _clamp(v, 100, 10000)

    @field_validator("auto_cleanup_days")
    @classmethod
    def clamp_cleanup_days(cls, v: int) -> int:
        return _clamp(v, 0, 365)


class SettingsUpdateRequest(BaseModel):
    """Partial update, unset fields keep their stored value"""
    enable_login_monitoring: Optional[bool] = None
    enable_site_monitoring: Optional[bool] = None
    login_timeout_seconds: Optional[int] = None
    max_log_entries: Optional[int] = None
    auto_cleanup_days: Optional[int] = None
