from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List
import logging

from loggr.api.v1.dependencies.context import get_app_context
from loggr.core.context import AppContext
from loggr.database.database_factory import get_db
from loggr.database.repositories.console_error_repository import (
    ConsoleErrorRepository, MAX_ERROR_LIST_LIMIT, MAX_LOGIN_HISTORY_LIMIT)
from loggr.database.repositories.ip_mapping_repository import IpMappingRepository
from loggr.schemas.base import BaseResponse
from loggr.schemas.error_record import (
    ConsoleErrorResponse, ConsoleErrorDetailResponse, PaginatedConsoleErrorResponse,
    ErrorStatsResponse, LoginStatsResponse)

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Admin - Errors"],
    responses={404: {"description": "Not found"}}
)


def _not_found(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": message, "logout": False, "details": [{"msg": message}]}
    )


@router.get("/errors", response_model=BaseResponse[PaginatedConsoleErrorResponse],
            summary="List errors",
            description="Filtered, ordered list of captured errors (at most 1000 rows per page)")
async def list_errors(
    request: Request,
    limit: int = Query(50, gt=0, description="Rows per page, capped server side"),
    offset: int = Query(0, ge=0),
    orderby: str = Query("timestamp"),
    order: str = Query("DESC"),
    error_type: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, description="ISO date/time"),
    date_to: Optional[str] = Query(None, description="ISO date/time"),
    search: Optional[str] = Query(None, description="Substring of message or source"),
    is_login_page: Optional[bool] = Query(None),
    user_id: Optional[int] = Query(None),
    associated_user_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
    app_context: AppContext = Depends(get_app_context)
):
    repo = ConsoleErrorRepository(db, app_context.cache)
    filters = dict(error_type=error_type, date_from=date_from, date_to=date_to, search=search,
                   is_login_page=is_login_page, user_id=user_id, associated_user_id=associated_user_id)
    errors = await repo.get_errors(limit=limit, offset=offset, orderby=orderby, order=order, **filters)
    total = await repo.get_error_count(**filters)

    return BaseResponse.from_request(
        request=request,
        data=PaginatedConsoleErrorResponse(
            errors=[ConsoleErrorResponse.model_validate(e) for e in errors],
            total_count=total,
            limit=min(limit, MAX_ERROR_LIST_LIMIT),
            offset=offset
        ),
        message="Errors retrieved successfully"
    )


@router.get("/errors/{error_id}", response_model=BaseResponse[ConsoleErrorDetailResponse],
            summary="Get error details")
async def get_error(request: Request, error_id: int, db: AsyncSession = Depends(get_db)):
    error = await ConsoleErrorRepository(db).get_error(error_id)
    if not error:
        raise _not_found("Error not found")
    return BaseResponse.from_request(request=request, data=ConsoleErrorDetailResponse.model_validate(error))


@router.delete("/errors/{error_id}", response_model=BaseResponse[dict], summary="Delete one error")
async def delete_error(request: Request, error_id: int,
                       db: AsyncSession = Depends(get_db),
                       app_context: AppContext = Depends(get_app_context)):
    repo = ConsoleErrorRepository(db, app_context.cache)
    if not await repo.delete_error(error_id):
        raise _not_found("Error not found")
    await repo.invalidate_stats_cache()
    return BaseResponse.from_request(request=request, data={"deleted": 1}, message="Error deleted")


@router.put("/errors/{error_id}/associated-user", response_model=BaseResponse[dict],
            summary="Attribute an error to a user")
async def set_associated_user(request: Request, error_id: int,
                              user_id: int = Query(..., gt=0),
                              db: AsyncSession = Depends(get_db)):
    if not await ConsoleErrorRepository(db).update_error_associated_user(error_id, user_id):
        raise _not_found("Error not found")
    return BaseResponse.from_request(request=request, data={"error_id": error_id, "associated_user_id": user_id})


@router.delete("/errors", response_model=BaseResponse[dict], summary="Clear all errors")
async def clear_errors(request: Request,
                       db: AsyncSession = Depends(get_db),
                       app_context: AppContext = Depends(get_app_context)):
    repo = ConsoleErrorRepository(db, app_context.cache)
    deleted = await repo.clear_all_logs()
    await repo.invalidate_stats_cache()
    logger.info(f"Admin cleared all error logs ({deleted} rows)")
    return BaseResponse.from_request(request=request, data={"deleted": deleted},
                                     message="All error logs have been cleared.")


@router.get("/stats", response_model=BaseResponse[ErrorStatsResponse], summary="Error statistics")
async def get_stats(request: Request,
                    date_from: Optional[str] = Query(None),
                    date_to: Optional[str] = Query(None),
                    db: AsyncSession = Depends(get_db),
                    app_context: AppContext = Depends(get_app_context)):
    repo = ConsoleErrorRepository(db, app_context.cache)
    stats = await repo.get_error_stats(date_from=date_from, date_to=date_to)
    last_error_time = await repo.get_last_error_time()
    return BaseResponse.from_request(request=request,
                                     data=ErrorStatsResponse(**stats, last_error_time=last_error_time))


@router.get("/login-history", response_model=BaseResponse[List[ConsoleErrorDetailResponse]],
            summary="Login history", description="Login events, newest first (at most 500 rows)")
async def get_login_history(
    request: Request,
    limit: int = Query(50, gt=0),
    offset: int = Query(0, ge=0),
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    success_only: bool = Query(False),
    failed_only: bool = Query(False),
    user_id: Optional[int] = Query(None),
    ip_address: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    events = await ConsoleErrorRepository(db).get_login_history(
        limit=min(limit, MAX_LOGIN_HISTORY_LIMIT), offset=offset, date_from=date_from, date_to=date_to,
        success_only=success_only, failed_only=failed_only, user_id=user_id, ip_address=ip_address)
    return BaseResponse.from_request(request=request,
                                     data=[ConsoleErrorDetailResponse.model_validate(e) for e in events])


@router.get("/login-stats", response_model=BaseResponse[LoginStatsResponse], summary="Login statistics")
async def get_login_stats(request: Request,
                          date_from: Optional[str] = Query(None),
                          date_to: Optional[str] = Query(None),
                          db: AsyncSession = Depends(get_db),
                          app_context: AppContext = Depends(get_app_context)):
    stats = await ConsoleErrorRepository(db, app_context.cache).get_login_stats(date_from=date_from,
                                                                                date_to=date_to)
    return BaseResponse.from_request(request=request, data=LoginStatsResponse(**stats))


@router.get("/ip-mappings", response_model=BaseResponse[List[dict]],
            summary="IP to user mappings", description="Look up by ip_address or by user_id")
async def get_ip_mappings(request: Request,
                          ip_address: Optional[str] = Query(None),
                          user_id: Optional[int] = Query(None),
                          db: AsyncSession = Depends(get_db)):
    if not ip_address and not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "ip_address or user_id is required", "logout": False,
                    "details": [{"msg": "ip_address or user_id is required"}]}
        )
    repo = IpMappingRepository(db)
    mappings = await repo.get_users_by_ip(ip_address) if ip_address else await repo.get_ips_by_user(user_id)
    return BaseResponse.from_request(request=request, data=[
        {
            "ip_address": m.ip_address,
            "user_id": m.user_id,
            "first_seen": m.first_seen.isoformat() if m.first_seen else None,
            "last_seen": m.last_seen.isoformat() if m.last_seen else None,
            "login_count": m.login_count,
        } for m in mappings
    ])
