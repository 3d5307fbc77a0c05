"""
Cache-aside store with tag-based invalidation.

Backed by Redis when a URL is configured. Without a backend every method
returns its neutral value (None, False or []) so callers can treat caching
purely as an optimization. Backend errors are logged and swallowed for the
same reason.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import redis.asyncio as aioredis
import structlog

from storefront.config import Settings
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STATS_FIELDS = (
    "total_connections_received",
    "total_commands_processed",
    "instantaneous_ops_per_sec",
)


class CacheStore:
    """
    JSON value cache over Redis.

    Keys and tag indexes live under ``key_prefix``. Each tag is a Redis set
    ``tag:<name>`` holding the (unprefixed) keys written with that tag.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        default_ttl: int = 3600,
        key_prefix: str = "",
        write_timeout: float = 2.0,
    ):
        """
        Initialize cache store.

        Args:
            redis_client: Redis client, or None to disable caching
            default_ttl: TTL applied when set() is called without one
            key_prefix: Namespace prepended to every key
            write_timeout: Upper bound for background writes from get_or_set
        """
        self.redis = redis_client
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self.write_timeout = write_timeout
        self._pending: Set[asyncio.Task] = set()

        if redis_client is None:
            logger.warning("cache_disabled", reason="redis_url not configured")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheStore":
        """Create a store from settings; caching is disabled without a Redis URL."""
        client = None
        if settings.redis_url:
            client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return cls(
            client,
            default_ttl=settings.cache_default_ttl,
            key_prefix=settings.cache_key_prefix,
            write_timeout=settings.cache_write_timeout,
        )

    @property
    def enabled(self) -> bool:
        """True when a backend is configured."""
        return self.redis is not None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}tag:{tag}"

    async def get(self, key: str) -> Any:
        """
        Get a cached value.

        Args:
            key: Cache key

        Returns:
            Any: Decoded value, or None on miss, decode error or backend error
        """
        if self.redis is None:
            return None

        try:
            raw = await self.redis.get(self._key(key))
        except Exception as e:
            logger.error("cache_get_error", key=key, error=str(e))
            metrics.record_cache_operation("get", "error")
            return None

        if raw is None:
            metrics.record_cache_operation("get", "miss")
            return None

        try:
            value = json.loads(raw)
        except ValueError as e:
            logger.error("cache_decode_error", key=key, error=str(e))
            metrics.record_cache_operation("get", "error")
            return None

        metrics.record_cache_operation("get", "hit")
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Store a value.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Seconds to live; None uses the default, 0 means no expiry
            tags: Invalidation groups the key belongs to

        Returns:
            bool: True if the value was written
        """
        if self.redis is None:
            return False

        ttl = self.default_ttl if ttl is None else ttl

        try:
            serialized = json.dumps(value)
            if ttl > 0:
                await self.redis.setex(self._key(key), ttl, serialized)
            else:
                await self.redis.set(self._key(key), serialized)

            tags = list(tags or [])
            if tags:
                await self._index_tags(key, tags, ttl)
        except Exception as e:
            logger.error("cache_set_error", key=key, error=str(e))
            metrics.record_cache_operation("set", "error")
            return False

        metrics.record_cache_operation("set", "ok")
        return True

    async def _index_tags(self, key: str, tags: List[str], ttl: int) -> None:
        """
        Add a key to its tag sets.

        A tag set must outlive every member it tracks, so its TTL is only
        ever extended. A member without expiry makes the tag set persistent.
        """
        tag_keys = [self._tag_key(tag) for tag in tags]

        current_ttls: List[int] = []
        if ttl > 0:
            pipe = self.redis.pipeline()
            for tag_key in tag_keys:
                pipe.ttl(tag_key)
            current_ttls = await pipe.execute()

        pipe = self.redis.pipeline()
        for i, tag_key in enumerate(tag_keys):
            pipe.sadd(tag_key, key)
            if ttl <= 0:
                pipe.persist(tag_key)
                continue
            # -2: tag set is new, -1: a member never expires
            current = current_ttls[i]
            if current == -2 or (current >= 0 and current < ttl):
                pipe.expire(tag_key, ttl)
        await pipe.execute()

    async def delete(self, key: str) -> bool:
        """Delete a single key."""
        if self.redis is None:
            return False

        try:
            await self.redis.delete(self._key(key))
            return True
        except Exception as e:
            logger.error("cache_delete_error", key=key, error=str(e))
            metrics.record_cache_operation("delete", "error")
            return False

    async def delete_many(self, keys: List[str]) -> bool:
        """Delete several keys in one round trip."""
        if self.redis is None or not keys:
            return False

        try:
            await self.redis.delete(*[self._key(k) for k in keys])
            return True
        except Exception as e:
            logger.error("cache_delete_many_error", keys=keys, error=str(e))
            metrics.record_cache_operation("delete_many", "error")
            return False

    async def invalidate_tag(self, tag: str) -> bool:
        """
        Delete every key indexed under a tag, then the tag index itself.

        Keys added to the tag while this runs may survive; there is no
        atomicity across the read-then-delete sequence.
        """
        if self.redis is None:
            return False

        try:
            members = await self.redis.smembers(self._tag_key(tag))
            if members:
                await self.redis.delete(*[self._key(k) for k in members])
            await self.redis.delete(self._tag_key(tag))
        except Exception as e:
            logger.error("cache_invalidate_tag_error", tag=tag, error=str(e))
            metrics.record_cache_operation("invalidate_tag", "error")
            return False

        logger.info("cache_tag_invalidated", tag=tag, keys=len(members))
        return True

    async def clear(self) -> bool:
        """Flush the whole backing database. For tests and operations only."""
        if self.redis is None:
            return False

        try:
            await self.redis.flushdb()
        except Exception as e:
            logger.error("cache_clear_error", error=str(e))
            return False

        logger.warning("cache_cleared")
        return True

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Any:
        """
        Cache-aside read.

        On a miss ``factory`` is awaited once and its value returned at once;
        the cache write runs as a tracked background task bounded by
        ``write_timeout``. Failed writes are logged and counted, never raised.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await factory()

        if self.redis is not None:
            task = asyncio.create_task(
                self._background_set(key, value, ttl, list(tags or []))
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return value

    async def _background_set(
        self, key: str, value: Any, ttl: Optional[int], tags: List[str]
    ) -> None:
        try:
            written = await asyncio.wait_for(
                self.set(key, value, ttl=ttl, tags=tags), timeout=self.write_timeout
            )
        except asyncio.TimeoutError:
            logger.error("cache_background_write_timeout", key=key, timeout=self.write_timeout)
            metrics.record_cache_write_failure("timeout")
            return

        if not written:
            logger.error("cache_background_write_failed", key=key)
            metrics.record_cache_write_failure("rejected")

    async def drain(self) -> None:
        """Wait for pending background writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def increment(self, key: str, amount: int = 1) -> Optional[int]:
        """Increment an integer counter, returning the new value."""
        if self.redis is None:
            return None

        try:
            return await self.redis.incrby(self._key(key), amount)
        except Exception as e:
            logger.error("cache_increment_error", key=key, error=str(e))
            return None

    async def hset(self, key: str, field: str, value: Any) -> bool:
        """Set a JSON-encoded hash field."""
        if self.redis is None:
            return False

        try:
            await self.redis.hset(self._key(key), field, json.dumps(value))
            return True
        except Exception as e:
            logger.error("cache_hset_error", key=key, field=field, error=str(e))
            return False

    async def hget(self, key: str, field: str) -> Any:
        """Get a decoded hash field."""
        if self.redis is None:
            return None

        try:
            raw = await self.redis.hget(self._key(key), field)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.error("cache_hget_error", key=key, field=field, error=str(e))
            return None

    async def hgetall(self, key: str) -> Optional[Dict[str, Any]]:
        """Get every hash field; values that are not JSON are returned raw."""
        if self.redis is None:
            return None

        try:
            raw_hash = await self.redis.hgetall(self._key(key))
        except Exception as e:
            logger.error("cache_hgetall_error", key=key, error=str(e))
            return None

        result: Dict[str, Any] = {}
        for field, raw in raw_hash.items():
            try:
                result[field] = json.loads(raw)
            except ValueError:
                result[field] = raw
        return result

    async def zadd(self, key: str, score: float, member: str) -> bool:
        """Add a member to a sorted set."""
        if self.redis is None:
            return False

        try:
            await self.redis.zadd(self._key(key), {member: score})
            return True
        except Exception as e:
            logger.error("cache_zadd_error", key=key, error=str(e))
            return False

    async def zrange(
        self, key: str, start: int, stop: int, with_scores: bool = False
    ) -> List[Any]:
        """
        Read a sorted set range.

        Returns:
            List[Any]: Members, or ``{"member", "score"}`` dicts when
            ``with_scores`` is set
        """
        if self.redis is None:
            return []

        try:
            if with_scores:
                rows = await self.redis.zrange(self._key(key), start, stop, withscores=True)
                return [{"member": member, "score": float(score)} for member, score in rows]
            return list(await self.redis.zrange(self._key(key), start, stop))
        except Exception as e:
            logger.error("cache_zrange_error", key=key, error=str(e))
            return []

    async def ping(self) -> bool:
        """Check backend connectivity."""
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning("cache_ping_failed", error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """
        Summarize backend state for the admin API.

        Returns:
            Dict[str, Any]: ``{"enabled": False}`` without a backend, key
            counters from INFO otherwise
        """
        if self.redis is None:
            return {"enabled": False}

        try:
            stats_info = await self.redis.info("stats")
            memory_info = await self.redis.info("memory")
            db_size = await self.redis.dbsize()
        except Exception as e:
            logger.error("cache_stats_error", error=str(e))
            return {"enabled": True, "error": str(e)}

        stats: Dict[str, Any] = {
            "enabled": True,
            "connected": True,
            "db_size": db_size,
        }
        for field in STATS_FIELDS:
            if field in stats_info:
                stats[field] = stats_info[field]
        if "used_memory_human" in memory_info:
            stats["used_memory_human"] = memory_info["used_memory_human"]
        return stats

    async def close(self) -> None:
        """Finish background writes and close the Redis connection."""
        await self.drain()
        if self.redis is not None:
            await self.redis.aclose()
