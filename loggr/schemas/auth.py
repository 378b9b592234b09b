from pydantic import BaseModel, Field
from typing import Optional, List


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginEventRequest(BaseModel):
    """Successful login reported by the host platform"""
    user_id: int
    username: str = Field(..., max_length=60)
    ip_address: str = Field(..., max_length=45)
    email: Optional[str] = Field(None, max_length=255)
    roles: List[str] = Field(default_factory=list)


class FailedLoginEventRequest(BaseModel):
    """Failed login reported by the host platform"""
    username: Optional[str] = Field(None, max_length=60)
    ip_address: str = Field(..., max_length=45)
    user_id: Optional[int] = None
    user_exists: bool = False
