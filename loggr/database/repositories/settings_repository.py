from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from pydantic import ValidationError as PydanticValidationError
from loggr.database.models.option import Option
from loggr.schemas.settings import Settings, SETTINGS_OPTION_KEY
from loggr.core.exceptions import StorageError
from loggr.core.utils import utcnow
import logging

logger = logging.getLogger(__name__)


class SettingsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(self) -> Settings:
        """Stored settings, or defaults when the row is missing or unreadable."""
        try:
            result = await self.db.execute(select(Option.value).where(Option.key == SETTINGS_OPTION_KEY))
            stored = result.scalar_one_or_none()
        except Exception as e:
            logger.error(f"Error loading settings, using defaults: {str(e)}")
            return Settings()

        if not isinstance(stored, dict):
            return Settings()
        try:
            return Settings(**stored)
        except PydanticValidationError as e:
            logger.warning(f"Stored settings invalid, using defaults: {str(e)}")
            return Settings()

    async def save_settings(self, settings: Settings) -> Settings:
        # Re-validate so values assigned after construction are clamped too
        settings = Settings(**settings.model_dump())
        try:
            option = await self.db.get(Option, SETTINGS_OPTION_KEY)
            if option is None:
                self.db.add(Option(key=SETTINGS_OPTION_KEY, value=settings.model_dump()))
            else:
                option.value = settings.model_dump()
                option.updated_at = utcnow()
            await self.db.commit()
            logger.info("Settings saved")
            return settings
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error saving settings: {str(e)}")
            raise StorageError(f"Failed to save settings: {str(e)}") from e
