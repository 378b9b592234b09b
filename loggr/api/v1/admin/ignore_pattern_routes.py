from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List
import logging

from loggr.core.config import config
from loggr.core.exceptions import ValidationError
from loggr.core.services.ignore_matcher import validate_pattern_definition
from loggr.database.database_factory import get_db
from loggr.database.repositories.ignore_pattern_repository import IgnorePatternRepository
from loggr.schemas.base import BaseResponse
from loggr.schemas.ignore_pattern import IgnorePatternRequest, IgnorePatternResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Admin - Ignore Patterns"],
    responses={404: {"description": "Not found"}}
)


def _pattern_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": "Ignore pattern not found", "logout": False,
                "details": [{"msg": "Ignore pattern not found"}]}
    )


@router.get("/ignore-patterns", response_model=BaseResponse[List[IgnorePatternResponse]],
            summary="List ignore patterns", description="In evaluation order")
async def list_ignore_patterns(request: Request,
                               active_only: bool = Query(False),
                               db: AsyncSession = Depends(get_db)):
    patterns = await IgnorePatternRepository(db).get_ignore_patterns(
        active_only=active_only, priority=config.IGNORE_PATTERN_PRIORITY)
    return BaseResponse.from_request(request=request,
                                     data=[IgnorePatternResponse.model_validate(p) for p in patterns])


@router.post("/ignore-patterns", response_model=BaseResponse[IgnorePatternResponse],
             status_code=status.HTTP_201_CREATED, summary="Add ignore pattern")
async def add_ignore_pattern(request: Request, body: IgnorePatternRequest, db: AsyncSession = Depends(get_db)):
    try:
        validate_pattern_definition(body.pattern_type, body.pattern_value)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "logout": False, "details": [{"msg": e.message}]}
        )
    pattern = await IgnorePatternRepository(db).add_ignore_pattern(body.pattern_type, body.pattern_value,
                                                                   notes=body.notes)
    return BaseResponse.from_request(request=request, data=IgnorePatternResponse.model_validate(pattern),
                                     message="Ignore pattern added successfully")


@router.post("/ignore-patterns/{pattern_id}/toggle", response_model=BaseResponse[IgnorePatternResponse],
             summary="Enable or disable an ignore pattern")
async def toggle_ignore_pattern(request: Request, pattern_id: int, db: AsyncSession = Depends(get_db)):
    pattern = await IgnorePatternRepository(db).toggle_ignore_pattern(pattern_id)
    if pattern is None:
        raise _pattern_not_found()
    return BaseResponse.from_request(request=request, data=IgnorePatternResponse.model_validate(pattern))


@router.delete("/ignore-patterns/{pattern_id}", response_model=BaseResponse[dict],
               summary="Delete an ignore pattern")
async def delete_ignore_pattern(request: Request, pattern_id: int, db: AsyncSession = Depends(get_db)):
    if not await IgnorePatternRepository(db).delete_ignore_pattern(pattern_id):
        raise _pattern_not_found()
    return BaseResponse.from_request(request=request, data={"deleted": pattern_id},
                                     message="Ignore pattern deleted")
