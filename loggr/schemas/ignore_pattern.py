from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class IgnorePatternRequest(BaseModel):
    pattern_type: str = Field(..., max_length=50)
    pattern_value: str = Field(..., min_length=1, max_length=5000)
    notes: Optional[str] = Field(None, max_length=2000)


class IgnorePatternResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pattern_type: str
    pattern_value: str
    is_active: bool
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    ignore_count: int = 0
    last_ignored: Optional[datetime] = None
