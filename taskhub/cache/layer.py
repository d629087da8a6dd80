import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from taskhub.core.config import Settings

logger = logging.getLogger(__name__)


class CacheLayer:
    """
    Best-effort Redis cache shared by every worker.

    Features:
    - Cache-aside reads with stampede protection (per-key locks)
    - Atomic counters via INCRBY/DECRBY with TTL refresh
    - Graceful degradation when Redis is unavailable
    - Optional key namespacing

    No method raises on a Redis or serialization failure: the error is
    logged, counted in ``stats`` and the call reports a miss / ``False``.
    """

    def __init__(
        self,
        redis: Redis | None,
        namespace: str = "",
        default_ttl: int = 300,
    ):
        self._redis = redis
        self.namespace = namespace
        self.default_ttl = default_ttl

        # Lock management for cache stampede protection.
        # setdefault() hands every concurrent caller for a key the same lock;
        # the 300s TTL outlives any store read made while holding it.
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)

        # Stats tracking
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
        }

    @classmethod
    async def connect(cls, settings: Settings) -> "CacheLayer":
        """Open the Redis pool and verify it; fall back to no cache on failure."""
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        try:
            await redis.ping()
            logger.info("Redis connection established")
        except RedisError as e:
            logger.error("Redis initialization failed, running without cache: %s", e)
            await redis.aclose()
            redis = None

        return cls(
            redis,
            namespace=settings.cache_namespace,
            default_ttl=settings.cache_default_ttl_seconds,
        )

    @property
    def available(self) -> bool:
        return self._redis is not None

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self.namespace}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Return raw string if not valid JSON
            return raw

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on miss or error."""
        if not self._redis:
            self.stats["misses"] += 1
            return None

        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            logger.error("Redis GET error key=%s: %s", key, e)
            self.stats["errors"] += 1
            return None

        if raw is None:
            self.stats["misses"] += 1
            logger.debug("Cache miss key=%s", key)
            return None

        self.stats["hits"] += 1
        logger.debug("Cache hit key=%s", key)
        return self._deserialize(raw)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Cache-aside read: cache first, then ``loader`` on a miss.

        Args:
            key: Cache key (will be namespaced automatically)
            loader: Async function producing a JSON-serializable value;
                exceptions it raises propagate to the caller
            ttl: Lifetime of the stored value in seconds

        Returns:
            Cached or loaded value, or None if the loader found nothing
        """
        value = await self.get(key)
        if value is not None:
            return value

        async with self._lock_for(key):
            # Another caller may have filled it while we waited
            if self._redis:
                value = await self.get(key)
                if value is not None:
                    return value

            value = await loader()
            if value is None:
                return None

            await self.set(key, value, ttl)
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self._redis:
            return False

        try:
            data = self._serialize(value)
            await self._redis.set(self._key(key), data, ex=ttl or self.default_ttl)
            logger.debug("Stored key=%s ttl=%s", key, ttl or self.default_ttl)
            return True
        except (TypeError, ValueError) as e:
            logger.error("Serialization failed key=%s: %s", key, e)
        except RedisError as e:
            logger.error("Redis SET error key=%s: %s", key, e)
        self.stats["errors"] += 1
        return False

    async def delete(self, key: str) -> bool:
        if not self._redis:
            return False

        try:
            await self._redis.delete(self._key(key))
            logger.debug("Deleted key=%s", key)
            return True
        except RedisError as e:
            logger.error("Redis DELETE error key=%s: %s", key, e)
            self.stats["errors"] += 1
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern; returns how many went."""
        if not self._redis:
            return 0

        try:
            cursor = 0
            deleted_count = 0

            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=self._key(pattern), count=100
                )
                if keys:
                    await self._redis.delete(*keys)
                    deleted_count += len(keys)
                if cursor == 0:
                    break

            logger.debug("Pattern delete pattern=%s deleted=%s", pattern, deleted_count)
            return deleted_count

        except RedisError as e:
            logger.error("Pattern delete error pattern=%s: %s", pattern, e)
            self.stats["errors"] += 1
            return 0

    async def incr(self, key: str, delta: int, ttl: int) -> Optional[int]:
        """
        Atomically add ``delta`` to an integer counter and reset its TTL.

        A counter pushed below zero is deleted rather than kept, so the next
        reader recounts from the database. Returns the new value, or None if
        the counter was dropped or Redis failed.
        """
        if not self._redis:
            return None

        k = self._key(key)
        try:
            if delta >= 0:
                value = await self._redis.incrby(k, delta)
            else:
                value = await self._redis.decrby(k, -delta)
        except RedisError as e:
            logger.error("Redis INCRBY error key=%s delta=%s: %s", key, delta, e)
            self.stats["errors"] += 1
            return None

        if value < 0:
            logger.warning("Counter key=%s went negative (%s), dropping it", key, value)
            await self.delete(key)
            return None

        try:
            await self._redis.expire(k, ttl)
        except RedisError as e:
            logger.error("Redis EXPIRE error key=%s: %s", key, e)
            self.stats["errors"] += 1
        return value

    async def get_int(self, key: str) -> Optional[int]:
        value = await self.get(key)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Non-integer value under counter key=%s", key)
            return None

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error("Error closing Redis: %s", e)

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "available": self.available,
            "hit_rate": self.stats["hits"] / total if total > 0 else 0,
        }
