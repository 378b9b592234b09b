import uuid
from typing import Any, Dict, Generic, List, Optional, TypeVar

from fastapi import Request
from pydantic import BaseModel, Field

T = TypeVar('T')


def request_id_for(request: Optional[Request]) -> str:
    """The id assigned by the request logging middleware, or a fresh one."""
    if request is not None:
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            return request_id
    return str(uuid.uuid4())


class ErrorResponse(BaseModel):
    message: Optional[str] = None
    logout: bool = False
    details: Optional[List[Dict[str, Any]]] = None


class BaseResponse(BaseModel, Generic[T]):
    """Envelope for every JSON API response except the ajax endpoint."""
    data: Optional[T] = None
    success: bool = True
    message: Optional[str] = None
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    error: Optional[ErrorResponse] = None

    @classmethod
    def from_request(cls, request: Request, data: Optional[T] = None,
                     message: Optional[str] = None, success: bool = True) -> "BaseResponse[T]":
        return cls(data=data, success=success, message=message, request_id=request_id_for(request))

    @classmethod
    def failure(cls, request: Optional[Request], message: str,
                error_message: Optional[str] = None,
                logout: bool = False,
                details: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Serialized failure envelope, ready for a JSONResponse body."""
        return cls(
            success=False,
            message=message,
            request_id=request_id_for(request),
            error=ErrorResponse(message=error_message, logout=logout, details=details),
        ).model_dump()
