from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from loggr.core.context import AppContext
from loggr.core.config import config
from loggr.core.request_context import RequestContext
from loggr.core.services.ingestion_service import IngestionService
from loggr.database.database_factory import get_db
from loggr.database.repositories.settings_repository import SettingsRepository
from loggr.api.v1.middlewares.request_logging_middleware import build_request_context
from loggr.schemas.settings import Settings


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "request_context", None)
    if context is None:
        context = build_request_context(request)
        request.state.request_context = context
    return context


async def get_settings(db: AsyncSession = Depends(get_db)) -> Settings:
    """Settings are read once per request"""
    return await SettingsRepository(db).get_settings()


async def get_ingestion_service(db: AsyncSession = Depends(get_db),
                                settings: Settings = Depends(get_settings),
                                app_context: AppContext = Depends(get_app_context)) -> IngestionService:
    return IngestionService(db,
                            settings,
                            cache=app_context.cache,
                            notifier=app_context.notifier,
                            ignore_priority=config.IGNORE_PATTERN_PRIORITY,
                            rate_limit=config.RATE_LIMIT_PER_MINUTE,
                            max_payload_bytes=config.MAX_PAYLOAD_BYTES)


async def ensure_schema(app_context: AppContext = Depends(get_app_context)) -> None:
    """Opportunistic repair on admin requests when a core table went missing"""
    await app_context.schema_manager.ensure_if_missing()
