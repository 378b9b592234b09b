from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import and_, asc, delete, desc, func, or_, update
from loggr.database.models.console_error import ConsoleError
from loggr.core.exceptions import StorageError
from loggr.core.services.cache_service import STATS_PREFIX, LOGIN_STATS_PREFIX
from loggr.core.utils import utcnow
from typing import Optional, Dict, List, Any, Union
import datetime
import hashlib
import json
import logging

logger = logging.getLogger(__name__)

MAX_ERROR_LIST_LIMIT = 1000
MAX_LOGIN_HISTORY_LIMIT = 500
STATS_CACHE_TTL = 300  # 5 minutes
LOGIN_STATS_CACHE_TTL = 600  # 10 minutes, multi-table aggregates

ALLOWED_ORDER_COLUMNS = ('id', 'timestamp', 'error_type', 'error_source', 'user_ip')

LOGIN_SUCCESS_TYPE = 'login_success'
LOGIN_FAILED_TYPES = ('login_failed_valid_user', 'login_failed_invalid_user', 'login_failed_empty')
LOGIN_EVENT_TYPES = (LOGIN_SUCCESS_TYPE,) + LOGIN_FAILED_TYPES

DateLike = Union[str, datetime.datetime, None]


def _parse_date(value: DateLike) -> Optional[datetime.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value
    try:
        return _parse_date(datetime.datetime.fromisoformat(str(value)))
    except ValueError:
        logger.warning(f"Ignoring unparseable date filter: {value}")
        return None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _cache_key(prefix: str, **filters) -> str:
    normalized = {k: (v.isoformat() if isinstance(v, datetime.datetime) else v)
                  for k, v in filters.items()}
    digest = hashlib.md5(json.dumps(normalized, sort_keys=True, default=str).encode()).hexdigest()
    return f"{prefix}{digest}"


class ConsoleErrorRepository:
    """Repository for captured error records"""

    def __init__(self, db: AsyncSession, cache=None):
        self.db = db
        self.cache = cache

    # Writes

    async def insert_error(self, error_data: Dict[str, Any]) -> ConsoleError:
        """
        Persist one sanitized error record

        Args:
            error_data: Column values; timestamp is always set here from the server clock

        Returns:
            The created ConsoleError

        Raises:
            StorageError: if the insert fails
        """
        try:
            values = {k: v for k, v in error_data.items()
                      if k in ConsoleError.__table__.columns and k not in ('id', 'timestamp')}
            console_error = ConsoleError(timestamp=utcnow(), **values)
            self.db.add(console_error)
            await self.db.commit()
            await self.db.refresh(console_error)
            logger.debug(f"Console error stored: {console_error.id}")
            return console_error
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to store console error: {str(e)}")
            raise StorageError(f"Failed to log error: {str(e)}") from e

    async def is_rate_limited(self, ip: str, threshold: int = 10, window_seconds: int = 60) -> bool:
        """
        True once `threshold` rows from this IP already exist inside the window.
        Counting stops at threshold+1 rows so cost stays flat under abuse.
        """
        since = utcnow() - datetime.timedelta(seconds=window_seconds)
        bounded = (
            select(ConsoleError.id)
            .where(ConsoleError.user_ip == ip, ConsoleError.timestamp > since)
            .limit(threshold + 1)
            .subquery()
        )
        result = await self.db.execute(select(func.count()).select_from(bounded))
        return (result.scalar() or 0) >= threshold

    async def check_and_cleanup(self, max_entries: int) -> int:
        """
        Evict the oldest rows once the table holds more than max_entries

        Returns:
            Number of evicted rows
        """
        try:
            count = (await self.db.execute(select(func.count(ConsoleError.id)))).scalar() or 0
            if count <= max_entries:
                return 0

            to_delete = count - max_entries
            oldest = (
                select(ConsoleError.id)
                .order_by(asc(ConsoleError.timestamp), asc(ConsoleError.id))
                .limit(to_delete)
            )
            await self.db.execute(
                delete(ConsoleError)
                .where(ConsoleError.id.in_(oldest))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.info(f"Evicted {to_delete} oldest console errors (limit {max_entries})")
            return to_delete
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error evicting old console errors: {str(e)}")
            return 0

    async def cleanup_old_logs(self, days: int) -> int:
        """
        Delete rows older than `days`; 0 disables cleanup

        Returns:
            Number of deleted rows
        """
        if days <= 0:
            return 0
        cutoff = utcnow() - datetime.timedelta(days=days)
        try:
            result = await self.db.execute(
                delete(ConsoleError)
                .where(ConsoleError.timestamp < cutoff)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            deleted = result.rowcount or 0
            logger.info(f"Retention cleanup removed {deleted} console errors older than {days} days")
            return deleted
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error during retention cleanup: {str(e)}")
            raise StorageError(f"Cleanup failed: {str(e)}") from e

    async def delete_error(self, error_id: int) -> bool:
        try:
            result = await self.db.execute(
                delete(ConsoleError)
                .where(ConsoleError.id == error_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return (result.rowcount or 0) > 0
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error deleting console error {error_id}: {str(e)}")
            raise StorageError(f"Failed to delete error: {str(e)}") from e

    async def clear_all_logs(self) -> int:
        try:
            result = await self.db.execute(
                delete(ConsoleError).execution_options(synchronize_session=False))
            await self.db.commit()
            return result.rowcount or 0
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error clearing console errors: {str(e)}")
            raise StorageError(f"Failed to clear error logs: {str(e)}") from e

    async def update_error_associated_user(self, error_id: int, user_id: int) -> bool:
        try:
            result = await self.db.execute(
                update(ConsoleError)
                .where(ConsoleError.id == error_id)
                .values(associated_user_id=user_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return (result.rowcount or 0) > 0
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error updating associated user for error {error_id}: {str(e)}")
            return False

    async def backfill_associated_user(self, ip: str, user_id: int, window_minutes: int = 30) -> int:
        """Attribute recent anonymous errors from this IP to a user who just logged in."""
        since = utcnow() - datetime.timedelta(minutes=window_minutes)
        try:
            result = await self.db.execute(
                update(ConsoleError)
                .where(
                    ConsoleError.user_ip == ip,
                    ConsoleError.timestamp >= since,
                    ConsoleError.user_id.is_(None),
                    ConsoleError.associated_user_id.is_(None),
                )
                .values(associated_user_id=user_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            updated = result.rowcount or 0
            if updated:
                logger.info(f"Attributed {updated} recent errors from {ip} to user {user_id}")
            return updated
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error back-filling associated user for {ip}: {str(e)}")
            return 0

    # Reads

    def _apply_filters(self, query,
                       error_type: Optional[str] = None,
                       date_from: DateLike = None,
                       date_to: DateLike = None,
                       search: Optional[str] = None,
                       is_login_page: Optional[bool] = None,
                       user_id: Optional[int] = None,
                       associated_user_id: Optional[int] = None,
                       user_ip: Optional[str] = None):
        if error_type:
            query = query.where(ConsoleError.error_type == error_type)
        start = _parse_date(date_from)
        if start:
            query = query.where(ConsoleError.timestamp >= start)
        end = _parse_date(date_to)
        if end:
            query = query.where(ConsoleError.timestamp <= end)
        if search:
            term = f"%{_escape_like(search)}%"
            query = query.where(or_(
                ConsoleError.error_message.like(term, escape="\\"),
                ConsoleError.error_source.like(term, escape="\\"),
            ))
        if is_login_page is not None:
            query = query.where(ConsoleError.is_login_page == bool(is_login_page))
        if user_id:
            query = query.where(ConsoleError.user_id == user_id)
        if associated_user_id:
            query = query.where(ConsoleError.associated_user_id == associated_user_id)
        if user_ip:
            query = query.where(ConsoleError.user_ip == user_ip)
        return query

    async def get_errors(self,
                         limit: int = 50,
                         offset: int = 0,
                         orderby: str = 'timestamp',
                         order: str = 'DESC',
                         **filters) -> List[ConsoleError]:
        """
        Get error records with filtering; limit is capped at MAX_ERROR_LIST_LIMIT

        Args:
            limit: Requested page size
            offset: Rows to skip
            orderby: One of ALLOWED_ORDER_COLUMNS, anything else falls back to timestamp
            order: ASC or DESC
            filters: error_type, date_from, date_to, search, is_login_page,
                     user_id, associated_user_id, user_ip

        Returns:
            List of ConsoleError rows
        """
        limit = max(1, min(int(limit), MAX_ERROR_LIST_LIMIT))
        offset = max(0, int(offset))
        column_name = orderby if orderby in ALLOWED_ORDER_COLUMNS else 'timestamp'
        column = getattr(ConsoleError, column_name)
        direction = asc if str(order).upper() == 'ASC' else desc

        query = self._apply_filters(select(ConsoleError), **filters)
        query = query.order_by(direction(column), direction(ConsoleError.id)).offset(offset).limit(limit)
        try:
            result = await self.db.execute(query)
            return list(result.scalars().all())
        except Exception as e:
            logger.error(f"Error retrieving console errors: {str(e)}")
            raise StorageError(f"Failed to query errors: {str(e)}") from e

    async def get_error(self, error_id: int) -> Optional[ConsoleError]:
        result = await self.db.execute(select(ConsoleError).where(ConsoleError.id == error_id))
        return result.scalars().first()

    async def get_error_count(self, **filters) -> int:
        query = self._apply_filters(select(func.count(ConsoleError.id)), **filters)
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def get_last_error_time(self) -> Optional[datetime.datetime]:
        result = await self.db.execute(select(func.max(ConsoleError.timestamp)))
        return result.scalar()

    async def get_error_stats(self, date_from: DateLike = None, date_to: DateLike = None) -> Dict[str, Any]:
        """
        Counts by type, last 24h and login page totals, cached for STATS_CACHE_TTL
        """
        start, end = _parse_date(date_from), _parse_date(date_to)
        cache_key = _cache_key(STATS_PREFIX, date_from=start, date_to=end)
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        def scoped(query):
            return self._apply_filters(query, date_from=start, date_to=end)

        total = (await self.db.execute(scoped(select(func.count(ConsoleError.id))))).scalar() or 0

        count_col = func.count(ConsoleError.id).label("count")
        type_result = await self.db.execute(
            scoped(select(ConsoleError.error_type, count_col))
            .group_by(ConsoleError.error_type)
            .order_by(desc("count"))
        )
        by_type = [{"error_type": row[0], "count": row[1]} for row in type_result.all()]

        day_ago = utcnow() - datetime.timedelta(hours=24)
        recent = (await self.db.execute(
            scoped(select(func.count(ConsoleError.id))).where(ConsoleError.timestamp > day_ago)
        )).scalar() or 0

        login_errors = (await self.db.execute(
            scoped(select(func.count(ConsoleError.id))).where(ConsoleError.is_login_page.is_(True))
        )).scalar() or 0

        stats = {
            "total": total,
            "by_type": by_type,
            "recent_24h": recent,
            "login_errors": login_errors,
        }
        if self.cache is not None:
            await self.cache.set(cache_key, stats, expire=STATS_CACHE_TTL)
        return stats

    async def get_login_history(self,
                                limit: int = 50,
                                offset: int = 0,
                                date_from: DateLike = None,
                                date_to: DateLike = None,
                                success_only: bool = False,
                                failed_only: bool = False,
                                user_id: Optional[int] = None,
                                ip_address: Optional[str] = None) -> List[ConsoleError]:
        """Login events newest first; limit is capped at MAX_LOGIN_HISTORY_LIMIT."""
        limit = max(1, min(int(limit), MAX_LOGIN_HISTORY_LIMIT))
        offset = max(0, int(offset))

        if success_only:
            types = (LOGIN_SUCCESS_TYPE,)
        elif failed_only:
            types = LOGIN_FAILED_TYPES
        else:
            types = LOGIN_EVENT_TYPES

        query = select(ConsoleError).where(ConsoleError.error_type.in_(types))
        query = self._apply_filters(query, date_from=date_from, date_to=date_to,
                                    user_id=user_id, user_ip=ip_address)
        query = query.order_by(desc(ConsoleError.timestamp), desc(ConsoleError.id)).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_login_stats(self, date_from: DateLike = None, date_to: DateLike = None) -> Dict[str, Any]:
        """Login success/failure aggregates, cached for LOGIN_STATS_CACHE_TTL."""
        start, end = _parse_date(date_from), _parse_date(date_to)
        cache_key = _cache_key(LOGIN_STATS_PREFIX, date_from=start, date_to=end)
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        def scoped(query):
            return self._apply_filters(query, date_from=start, date_to=end)

        successful = (await self.db.execute(
            scoped(select(func.count(ConsoleError.id))).where(ConsoleError.error_type == LOGIN_SUCCESS_TYPE)
        )).scalar() or 0
        failed = (await self.db.execute(
            scoped(select(func.count(ConsoleError.id))).where(ConsoleError.error_type.in_(LOGIN_FAILED_TYPES))
        )).scalar() or 0

        by_type_result = await self.db.execute(
            scoped(select(ConsoleError.error_type, func.count(ConsoleError.id)))
            .where(ConsoleError.error_type.in_(LOGIN_FAILED_TYPES))
            .group_by(ConsoleError.error_type)
        )
        failed_by_type = [{"error_type": row[0], "count": row[1]} for row in by_type_result.all()]

        attempts = func.count(ConsoleError.id).label("attempts")
        ip_result = await self.db.execute(
            scoped(select(ConsoleError.user_ip, attempts))
            .where(ConsoleError.error_type.in_(LOGIN_FAILED_TYPES))
            .group_by(ConsoleError.user_ip)
            .order_by(desc("attempts"))
            .limit(10)
        )
        top_failed_ips = [{"user_ip": row[0], "attempts": row[1]} for row in ip_result.all()]

        users_result = await self.db.execute(
            scoped(select(ConsoleError.user_id, attempts))
            .where(and_(ConsoleError.error_type == 'login_failed_valid_user',
                        ConsoleError.user_id.isnot(None)))
            .group_by(ConsoleError.user_id)
            .order_by(desc("attempts"))
            .limit(10)
        )
        most_targeted_users = [{"user_id": row[0], "attempts": row[1]} for row in users_result.all()]

        stats = {
            "successful_logins": successful,
            "failed_logins": failed,
            "failed_by_type": failed_by_type,
            "top_failed_ips": top_failed_ips,
            "most_targeted_users": most_targeted_users,
        }
        if self.cache is not None:
            await self.cache.set(cache_key, stats, expire=LOGIN_STATS_CACHE_TTL)
        return stats

    async def invalidate_stats_cache(self) -> None:
        if self.cache is None:
            return
        await self.cache.delete_prefix(STATS_PREFIX)
        await self.cache.delete_prefix(LOGIN_STATS_PREFIX)
