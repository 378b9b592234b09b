import logging
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from typing import Optional
from loggr.api.v1.dependencies.context import get_settings
from loggr.core.request_context import is_login_page_url
from loggr.core.security import create_nonce, LOG_ERROR_NONCE_ACTION
from loggr.schemas.base import BaseResponse
from loggr.schemas.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1",
    tags=["Client"],
)


class ClientConfigResponse(BaseModel):
    ajax_url: str
    nonce: str
    is_login_page: bool
    login_timeout: int
    capture_enabled: bool
    enable_login_monitoring: bool
    enable_site_monitoring: bool


@router.get("/client-config", response_model=BaseResponse[ClientConfigResponse],
            summary="Client capture configuration",
            description="Endpoint URL, a fresh log_error nonce and the monitoring switches for one page")
async def get_client_config(request: Request,
                            page_url: Optional[str] = Query(None, description="Page the client runs on"),
                            settings: Settings = Depends(get_settings)):
    page = page_url or request.headers.get("referer") or ""
    login_page = is_login_page_url(page)
    # Login pages are covered by login monitoring, everything else only by site monitoring
    capture_enabled = settings.enable_site_monitoring or (login_page and settings.enable_login_monitoring)

    return BaseResponse.from_request(
        request=request,
        data=ClientConfigResponse(
            ajax_url=str(request.url_for("ajax_endpoint")),
            nonce=create_nonce(LOG_ERROR_NONCE_ACTION),
            is_login_page=login_page,
            login_timeout=settings.login_timeout_seconds,
            capture_enabled=capture_enabled,
            enable_login_monitoring=settings.enable_login_monitoring,
            enable_site_monitoring=settings.enable_site_monitoring,
        )
    )
