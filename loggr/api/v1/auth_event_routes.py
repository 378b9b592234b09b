import logging
from fastapi import APIRouter, Depends, Request
from typing import Dict, Any
from loggr.api.v1.auth import admin_required
from loggr.api.v1.dependencies.context import get_ingestion_service
from loggr.core.services.ingestion_service import IngestionService
from loggr.schemas.auth import LoginEventRequest, FailedLoginEventRequest
from loggr.schemas.base import BaseResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/auth-events",
    tags=["Login Tracking"],
)


@router.post("/login", response_model=BaseResponse[dict],
             summary="Track successful login",
             description="Called by the host platform after a user logs in (admin/service token)")
async def track_login(request: Request,
                      event: LoginEventRequest,
                      service: IngestionService = Depends(get_ingestion_service),
                      token_data: Dict[str, Any] = Depends(admin_required)):
    stored = await service.track_login(
        user_id=event.user_id,
        username=event.username,
        ip_address=event.ip_address,
        email=event.email,
        roles=event.roles,
    )
    return BaseResponse.from_request(request=request, data={"error_id": stored.id},
                                     message="Login tracked")


@router.post("/login-failed", response_model=BaseResponse[dict],
             summary="Track failed login",
             description="Called by the host platform after a failed login attempt (admin/service token)")
async def track_failed_login(request: Request,
                             event: FailedLoginEventRequest,
                             service: IngestionService = Depends(get_ingestion_service),
                             token_data: Dict[str, Any] = Depends(admin_required)):
    stored = await service.track_failed_login(
        username=event.username,
        ip_address=event.ip_address,
        user_id=event.user_id,
        user_exists=event.user_exists,
    )
    return BaseResponse.from_request(request=request, data={"error_id": stored.id,
                                                            "error_type": stored.error_type},
                                     message="Failed login tracked")
