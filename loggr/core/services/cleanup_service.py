import asyncio
import logging
from sqlalchemy.ext.asyncio import async_sessionmaker
from loggr.database.repositories.console_error_repository import ConsoleErrorRepository
from loggr.database.repositories.settings_repository import SettingsRepository

logger = logging.getLogger(__name__)


async def run_cleanup(session_maker: async_sessionmaker, cache=None) -> int:
    """Apply the auto_cleanup_days retention once. Returns deleted row count."""
    async with session_maker() as db:
        settings = await SettingsRepository(db).get_settings()
        if settings.auto_cleanup_days <= 0:
            logger.debug("Retention cleanup disabled")
            return 0
        repo = ConsoleErrorRepository(db, cache)
        deleted = await repo.cleanup_old_logs(settings.auto_cleanup_days)
        if deleted:
            await repo.invalidate_stats_cache()
        return deleted


async def cleanup_loop(session_maker: async_sessionmaker, cache=None, interval_seconds: int = 86400):
    """Daily retention job; runs until cancelled on shutdown."""
    logger.info(f"Retention cleanup scheduled every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_cleanup(session_maker, cache)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled cleanup failed: {str(e)}", exc_info=True)
