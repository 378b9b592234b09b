import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from loggr.core.config import config
from loggr.core.services.cache_service import create_cache
from loggr.core.services.cleanup_service import cleanup_loop
from loggr.core.services.critical_notifier import CriticalNotifier
from loggr.database.database_factory import create_engine_for_url, create_session_maker
from loggr.database.schema_manager import SchemaManager

logger = logging.getLogger(__name__)


class AppContext:
    """Process wide services, built once by create_app() and kept on app.state.context."""

    def __init__(self, engine: AsyncEngine, cache=None, notifier: Optional[CriticalNotifier] = None):
        self.engine = engine
        self.session_maker = create_session_maker(engine)
        self.cache = cache if cache is not None else create_cache(None)
        self.notifier = notifier or CriticalNotifier()
        self.schema_manager = SchemaManager(engine)
        self.cleanup_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, database_url: Optional[str] = None, redis_url: Optional[str] = None):
        engine = create_engine_for_url(database_url or config.DATABASE_URL)
        return cls(engine, cache=create_cache(redis_url if redis_url is not None else config.REDIS_URL))

    def start_cleanup(self, interval_seconds: int = config.CLEANUP_INTERVAL_SECONDS) -> None:
        if self.cleanup_task is None or self.cleanup_task.done():
            self.cleanup_task = asyncio.create_task(
                cleanup_loop(self.session_maker, self.cache, interval_seconds))

    async def close(self) -> None:
        if self.cleanup_task is not None:
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None
        await self.notifier.drain()
        await self.cache.close()
        await self.engine.dispose()
        logger.info("Application context closed")
