from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy import desc, update
from loggr.database.models.ip_mapping import IpUserMapping
from loggr.core.utils import utcnow
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)


class IpMappingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _bump(self, ip_address: str, user_id: int) -> bool:
        result = await self.db.execute(
            update(IpUserMapping)
            .where(IpUserMapping.ip_address == ip_address, IpUserMapping.user_id == user_id)
            .values(last_seen=utcnow(), login_count=IpUserMapping.login_count + 1)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def track_user_ip(self, user_id: int, ip_address: str) -> bool:
        """Upsert the (ip, user) pair; repeat sightings bump login_count and last_seen."""
        if not user_id or not ip_address:
            return False
        try:
            if await self._bump(ip_address, user_id):
                await self.db.commit()
                return True

            now = utcnow()
            self.db.add(IpUserMapping(ip_address=ip_address, user_id=user_id,
                                      first_seen=now, last_seen=now, login_count=1))
            await self.db.commit()
            logger.debug(f"New IP mapping {ip_address} -> user {user_id}")
            return True
        except IntegrityError:
            # Lost an insert race on the unique pair, the row exists now
            await self.db.rollback()
            await self._bump(ip_address, user_id)
            await self.db.commit()
            return True
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error tracking IP mapping for user {user_id}: {str(e)}")
            return False

    async def get_associated_user_by_ip(self, ip_address: str) -> Optional[int]:
        """Most recently seen user for this address."""
        try:
            result = await self.db.execute(
                select(IpUserMapping.user_id)
                .where(IpUserMapping.ip_address == ip_address)
                .order_by(desc(IpUserMapping.last_seen), desc(IpUserMapping.id))
                .limit(1)
            )
            return result.scalar_one_or_none()
        except Exception as e:
            logger.error(f"Error looking up user for IP {ip_address}: {str(e)}")
            return None

    async def get_users_by_ip(self, ip_address: str) -> List[IpUserMapping]:
        result = await self.db.execute(
            select(IpUserMapping)
            .where(IpUserMapping.ip_address == ip_address)
            .order_by(desc(IpUserMapping.last_seen))
        )
        return list(result.scalars().all())

    async def get_ips_by_user(self, user_id: int) -> List[IpUserMapping]:
        result = await self.db.execute(
            select(IpUserMapping)
            .where(IpUserMapping.user_id == user_id)
            .order_by(desc(IpUserMapping.last_seen))
        )
        return list(result.scalars().all())
