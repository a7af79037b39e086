"""
Redis connection manager and Redis-backed fixture cache store.
Provides the async connection pool and the key namespace for persisted cache entries.
"""
from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import OutOfMemoryError, RedisError

from shared.config import Settings, get_settings
from shared.errors import CacheStoreError, StorageQuotaExceeded
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
CACHE_ENTRY_KEY = "{prefix}:cache:{date}:{league_id}"
CACHE_INDEX_KEY = "{prefix}:cache:index"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages the async Redis connection pool."""

    def __init__(self, settings: Settings | None = None, client: Optional[Redis] = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = client

    async def connect(self) -> None:
        """Initialize the connection pool."""
        if self._pool is None:
            self._pool = aioredis.from_url(
                self._settings.redis_url_str,
                max_connections=self._settings.redis_max_connections,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                retry_on_timeout=True,
            )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool


class RedisCacheStore:
    """
    Cache store on Redis.

    Every entry is a plain string key; a sorted set indexes entry keys by write
    timestamp so the manager can evict oldest-first. Redis OOM answers and the
    optional `max_entries` cap both surface as StorageQuotaExceeded.
    """

    def __init__(
        self,
        redis: RedisManager,
        prefix: str = "feed",
        max_entries: int = 0,
        expire_s: int = 8 * 24 * 3600,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._max_entries = max_entries
        self._expire_s = expire_s

    @property
    def index_key(self) -> str:
        return _fmt(CACHE_INDEX_KEY, prefix=self._prefix)

    def key(self, date: str, league_id: int) -> str:
        return _fmt(CACHE_ENTRY_KEY, prefix=self._prefix, date=date, league_id=league_id)

    async def open(self) -> None:
        await self._redis.connect()

    async def close(self) -> None:
        await self._redis.disconnect()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.client.get(key)
        except RedisError as exc:
            raise CacheStoreError(f"Redis read failed for {key}: {exc}") from exc

    async def set(self, key: str, value: str, timestamp: float) -> None:
        client = self._redis.client
        try:
            if self._max_entries:
                exists = await client.zscore(self.index_key, key)
                if exists is None and await client.zcard(self.index_key) >= self._max_entries:
                    raise StorageQuotaExceeded(f"Cache holds {self._max_entries} entries")
            pipe = client.pipeline(transaction=True)
            pipe.set(key, value, ex=self._expire_s)
            pipe.zadd(self.index_key, {key: timestamp})
            await pipe.execute()
        except OutOfMemoryError as exc:
            raise StorageQuotaExceeded(f"Redis out of memory writing {key}") from exc
        except RedisError as exc:
            raise CacheStoreError(f"Redis write failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            pipe = self._redis.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.zrem(self.index_key, key)
            await pipe.execute()
        except RedisError as exc:
            raise CacheStoreError(f"Redis delete failed for {key}: {exc}") from exc

    async def timestamps(self) -> list[tuple[str, float]]:
        """(key, timestamp) for every indexed entry, oldest first."""
        try:
            rows = await self._redis.client.zrange(self.index_key, 0, -1, withscores=True)
        except RedisError as exc:
            raise CacheStoreError(f"Redis index read failed: {exc}") from exc
        return [(str(member), float(score)) for member, score in rows]
