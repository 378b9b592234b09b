"""Transient cache for aggregate statistics and server side session ids.

Key prefixes in use:
    cel_stats_        error statistics, 5 minute TTL
    cel_login_stats_  login statistics, 10 minute TTL
    cel_session_      session id per client fingerprint, 1 hour TTL
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

STATS_PREFIX = "cel_stats_"
LOGIN_STATS_PREFIX = "cel_login_stats_"
SESSION_PREFIX = "cel_session_"

MEMORY_CACHE_MAX_ENTRIES = 10000


class MemoryCache:
    """Per-process TTL map. Stale reads are fine, every value carries its own expiry.

    Expired entries are swept every `sweep_every` writes, and once `max_entries`
    is reached the oldest written keys are evicted first.
    """

    def __init__(self, max_entries: int = MEMORY_CACHE_MAX_ENTRIES, sweep_every: int = 100):
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._cache_lock = asyncio.Lock()
        self.max_entries = max(1, max_entries)
        self.sweep_every = max(1, sweep_every)
        self._writes = 0

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, key: str) -> Optional[Any]:
        async with self._cache_lock:
            if key in self._cache:
                data, expires_at = self._cache[key]
                if datetime.now() < expires_at:
                    logger.debug(f"Cache hit for key: {key}")
                    return data
                logger.debug(f"Cache expired for key: {key}")
                del self._cache[key]
            return None

    def _sweep(self, now: datetime) -> int:
        expired = [k for k, (_, expires_at) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)

    async def set(self, key: str, value: Any, expire: int) -> None:
        async with self._cache_lock:
            now = datetime.now()
            self._writes += 1
            if self._writes % self.sweep_every == 0:
                swept = self._sweep(now)
                if swept:
                    logger.debug(f"Swept {swept} expired cache entries")
            # Re-insert so dict order stays write order
            self._cache.pop(key, None)
            if len(self._cache) >= self.max_entries:
                self._sweep(now)
            while len(self._cache) >= self.max_entries:
                del self._cache[next(iter(self._cache))]
            self._cache[key] = (value, now + timedelta(seconds=expire))
            logger.debug(f"Cache set for key: {key}")

    async def delete_prefix(self, prefix: str) -> int:
        async with self._cache_lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
            return len(keys)

    async def close(self) -> None:
        self._cache.clear()


class RedisCache:
    """Shared across workers. Values are JSON, every key carries a TTL."""

    def __init__(self, redis_url: str, connect_timeout: float = 5.0):
        self.redis_url = redis_url
        self.connect_timeout = connect_timeout
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> redis.Redis:
        async with self._lock:
            if self._client is None:
                client = redis.from_url(self.redis_url, decode_responses=True, health_check_interval=30)
                try:
                    await asyncio.wait_for(client.ping(), timeout=self.connect_timeout)
                except Exception as e:
                    await client.aclose()
                    logger.error(f"Redis unavailable at startup of cache: {e}")
                    raise ConnectionError(f"Redis connection failed: {e}") from e
                self._client = client
                logger.info("Connected to Redis cache")
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await (await self._get_client()).get(key)
        except Exception as e:
            logger.error(f"Error reading cache key {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding undecodable cache value for key: {key}")
            return None

    async def set(self, key: str, value: Any, expire: int) -> None:
        try:
            client = await self._get_client()
            await client.set(name=key, value=json.dumps(value, default=str), ex=max(1, int(expire)))
        except Exception as e:
            # Caching failure shouldn't break the request
            logger.error(f"Error caching key {key}: {e}")

    async def delete_prefix(self, prefix: str) -> int:
        try:
            client = await self._get_client()
            deleted = 0
            async for key in client.scan_iter(match=f"{prefix}*"):
                deleted += await client.delete(key)
            return deleted
        except Exception as e:
            logger.error(f"Error invalidating cache prefix {prefix}: {e}")
            return 0

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                try:
                    await self._client.aclose()
                except Exception as e:
                    logger.error(f"Error closing Redis connection: {e}")
                finally:
                    self._client = None


def create_cache(redis_url: Optional[str] = None):
    if redis_url:
        logger.info("Using Redis for transient cache entries")
        return RedisCache(redis_url)
    logger.info("REDIS_URL not set, using in-process cache")
    return MemoryCache()
