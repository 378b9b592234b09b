from .base import BaseResponse, ErrorResponse
