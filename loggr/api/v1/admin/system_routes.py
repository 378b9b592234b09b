from fastapi import APIRouter, Depends, Request
import logging

from loggr.api.v1.dependencies.context import get_app_context
from loggr.core.context import AppContext
from loggr.core.security import create_nonce, ADMIN_NONCE_ACTION
from loggr.core.services.cleanup_service import run_cleanup
from loggr.schemas.base import BaseResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin - System"])


@router.get("/tables/status", response_model=BaseResponse[dict],
            summary="Table status", description="Existence, row counts and missing columns/indexes, read live")
async def get_table_status(request: Request, app_context: AppContext = Depends(get_app_context)):
    return BaseResponse.from_request(request=request, data=await app_context.schema_manager.get_table_status())


@router.get("/diagnostics", response_model=BaseResponse[dict],
            summary="Diagnostics", description="Table status plus recorded table creation failures")
async def get_diagnostics(request: Request, app_context: AppContext = Depends(get_app_context)):
    manager = app_context.schema_manager
    return BaseResponse.from_request(request=request, data={
        "database_dialect": app_context.engine.dialect.name,
        "tables": await manager.get_table_status(),
        "creation_failures": manager.get_failures(),
        "strategies_used": dict(manager.strategy_used),
    })


@router.post("/tables/repair", response_model=BaseResponse[dict], summary="Create missing tables and indexes")
async def repair_tables(request: Request, app_context: AppContext = Depends(get_app_context)):
    results = await app_context.schema_manager.ensure_tables()
    failed = [name for name, strategy in results.items() if strategy is None]
    if failed:
        logger.error(f"Table repair incomplete, failed tables: {', '.join(failed)}")
    return BaseResponse.from_request(
        request=request,
        success=not failed,
        data={"results": results, "tables": await app_context.schema_manager.get_table_status()},
        message="Tables repaired" if not failed else "Some tables could not be created"
    )


@router.post("/cleanup", response_model=BaseResponse[dict], summary="Run retention cleanup now")
async def run_cleanup_now(request: Request, app_context: AppContext = Depends(get_app_context)):
    deleted = await run_cleanup(app_context.session_maker, app_context.cache)
    return BaseResponse.from_request(request=request, data={"deleted": deleted})


@router.get("/nonce", response_model=BaseResponse[dict],
            summary="Admin nonce", description="Nonce for the admin actions of the ajax endpoint")
async def get_admin_nonce(request: Request):
    return BaseResponse.from_request(request=request, data={"nonce": create_nonce(ADMIN_NONCE_ACTION)})
