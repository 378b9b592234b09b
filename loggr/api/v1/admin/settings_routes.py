from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from loggr.database.database_factory import get_db
from loggr.database.repositories.settings_repository import SettingsRepository
from loggr.schemas.base import BaseResponse
from loggr.schemas.settings import Settings, SettingsUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin - Settings"])


@router.get("/settings", response_model=BaseResponse[Settings], summary="Current settings")
async def get_settings(request: Request, db: AsyncSession = Depends(get_db)):
    return BaseResponse.from_request(request=request, data=await SettingsRepository(db).get_settings())


@router.put("/settings", response_model=BaseResponse[Settings],
            summary="Update settings", description="Numeric values outside their range are clamped")
async def update_settings(request: Request, body: SettingsUpdateRequest, db: AsyncSession = Depends(get_db)):
    repo = SettingsRepository(db)
    current = await repo.get_settings()
    merged = {**current.model_dump(), **body.model_dump(exclude_none=True)}
    saved = await repo.save_settings(Settings(**merged))
    return BaseResponse.from_request(request=request, data=saved, message="Settings saved successfully.")
