from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import asc, case, delete, desc, update
from loggr.database.models.ignore_pattern import IgnorePattern
from loggr.core.exceptions import StorageError
from loggr.core.utils import utcnow
from typing import Optional, List, Sequence
import logging

logger = logging.getLogger(__name__)


class IgnorePatternRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_ignore_patterns(self, active_only: bool = True,
                                  priority: Optional[Sequence[str]] = None) -> List[IgnorePattern]:
        """
        Patterns in evaluation order

        Args:
            active_only: Skip disabled patterns
            priority: Pattern types to evaluate first, in this order. Types not
                      listed follow, ordered by name. Within a type, newest first.
        """
        query = select(IgnorePattern)
        if active_only:
            query = query.where(IgnorePattern.is_active.is_(True))

        ordering = []
        if priority:
            rank = {pattern_type: index for index, pattern_type in enumerate(priority)}
            ordering.append(case(rank, value=IgnorePattern.pattern_type, else_=len(rank)))
        ordering += [asc(IgnorePattern.pattern_type), desc(IgnorePattern.id)]

        result = await self.db.execute(query.order_by(*ordering))
        return list(result.scalars().all())

    async def get_pattern(self, pattern_id: int) -> Optional[IgnorePattern]:
        result = await self.db.execute(select(IgnorePattern).where(IgnorePattern.id == pattern_id))
        return result.scalar_one_or_none()

    async def add_ignore_pattern(self, pattern_type: str, pattern_value: str,
                                 notes: Optional[str] = None) -> IgnorePattern:
        try:
            pattern = IgnorePattern(pattern_type=pattern_type, pattern_value=pattern_value,
                                    notes=notes, is_active=True)
            self.db.add(pattern)
            await self.db.commit()
            await self.db.refresh(pattern)
            logger.info(f"Created ignore pattern {pattern.id} ({pattern_type})")
            return pattern
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error creating ignore pattern: {str(e)}")
            raise StorageError(f"Failed to add ignore pattern: {str(e)}") from e

    async def toggle_ignore_pattern(self, pattern_id: int) -> Optional[IgnorePattern]:
        pattern = await self.get_pattern(pattern_id)
        if not pattern:
            return None
        try:
            pattern.is_active = not pattern.is_active
            await self.db.commit()
            await self.db.refresh(pattern)
            logger.info(f"Ignore pattern {pattern_id} active={pattern.is_active}")
            return pattern
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error toggling ignore pattern {pattern_id}: {str(e)}")
            raise StorageError(f"Failed to toggle ignore pattern: {str(e)}") from e

    async def delete_ignore_pattern(self, pattern_id: int) -> bool:
        try:
            result = await self.db.execute(
                delete(IgnorePattern)
                .where(IgnorePattern.id == pattern_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return (result.rowcount or 0) > 0
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error deleting ignore pattern {pattern_id}: {str(e)}")
            raise StorageError(f"Failed to delete ignore pattern: {str(e)}") from e

    async def record_ignored(self, pattern_id: int) -> None:
        """Bump the suppression counters. Failures only cost reporting accuracy."""
        try:
            await self.db.execute(
                update(IgnorePattern)
                .where(IgnorePattern.id == pattern_id)
                .values(ignore_count=IgnorePattern.ignore_count + 1, last_ignored=utcnow(),
                        updated_at=IgnorePattern.updated_at)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Could not update counters for ignore pattern {pattern_id}: {str(e)}")
