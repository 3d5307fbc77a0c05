"""
Unit tests for the cache store.
"""
import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY

from storefront.core.cache import CacheStore


def write_failures(reason: str) -> float:
    value = REGISTRY.get_sample_value(
        "cache_background_write_failures_total", {"reason": reason}
    )
    return value or 0.0


def failing_redis() -> MagicMock:
    """Redis client whose every command fails."""
    client = MagicMock()
    error = ConnectionError("redis unavailable")
    for command in ("get", "set", "setex", "delete", "smembers", "flushdb", "incrby", "ping"):
        setattr(client, command, AsyncMock(side_effect=error))
    return client


class TestCacheStore:
    """Test suite for CacheStore over fake Redis."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_and_get_round_trip(self, cache: CacheStore) -> None:
        """Values are JSON encoded under the key prefix."""
        assert await cache.set("product:1", {"id": "1", "price": 25.0}) is True

        assert await cache.get("product:1") == {"id": "1", "price": 25.0}
        assert await cache.redis.exists("test:product:1") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_ttl_applied(self, cache: CacheStore) -> None:
        """Omitted ttl uses the store default."""
        await cache.set("k", 1)

        ttl = await cache.redis.ttl("test:k")
        assert 0 < ttl <= 3600

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_ttl_means_no_expiry(self, cache: CacheStore) -> None:
        """ttl=0 stores the key without an expiry."""
        await cache.set("forever", "x", ttl=0, tags=["static"])

        assert await cache.redis.ttl("test:forever") == -1
        assert await cache.redis.ttl("test:tag:static") == -1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_short_lived_member_never_shortens_tag(self, cache: CacheStore) -> None:
        """The tag set keeps the longest TTL among its members."""
        await cache.set("long", {"v": 1}, ttl=3600, tags=["products"])
        await cache.set("short", {"v": 2}, ttl=1, tags=["products"])

        assert await cache.redis.ttl("test:tag:products") > 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_longer_member_extends_tag(self, cache: CacheStore) -> None:
        await cache.set("short", {"v": 2}, ttl=5, tags=["products"])
        await cache.set("long", {"v": 1}, ttl=3600, tags=["products"])

        assert await cache.redis.ttl("test:tag:products") > 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpiring_member_keeps_tag_persistent(self, cache: CacheStore) -> None:
        await cache.set("short", {"v": 2}, ttl=60, tags=["catalog"])
        await cache.set("forever", {"v": 1}, ttl=0, tags=["catalog"])
        await cache.set("later", {"v": 3}, ttl=30, tags=["catalog"])

        assert await cache.redis.ttl("test:tag:catalog") == -1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_after_short_member_expired(self, cache: CacheStore) -> None:
        """Longer-lived members stay reachable once a short member has expired."""
        await cache.set("forever", {"v": 1}, ttl=0, tags=["products"])
        await cache.set("long", {"v": 1}, ttl=3600, tags=["products"])
        await cache.set("short", {"v": 2}, ttl=1, tags=["products"])

        await asyncio.sleep(1.5)
        assert await cache.invalidate_tag("products") is True

        assert await cache.get("forever") is None
        assert await cache.get("long") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_key(self, cache: CacheStore) -> None:
        assert await cache.get("missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_corrupt_value_is_a_miss(self, cache: CacheStore) -> None:
        """Values that are not JSON are treated as a miss."""
        await cache.redis.set("test:broken", "{not json")

        assert await cache.get("broken") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_tag_removes_only_tagged_keys(self, cache: CacheStore) -> None:
        """Invalidating a tag deletes its keys and the tag index."""
        await cache.set("p:1", {"id": 1}, tags=["products"])
        await cache.set("p:2", {"id": 2}, tags=["products", "featured"])
        await cache.set("u:1", {"id": "u"}, tags=["users"])

        assert await cache.invalidate_tag("products") is True

        assert await cache.get("p:1") is None
        assert await cache.get("p:2") is None
        assert await cache.get("u:1") == {"id": "u"}
        assert await cache.redis.exists("test:tag:products") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_unknown_tag(self, cache: CacheStore) -> None:
        assert await cache.invalidate_tag("nothing") is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_and_delete_many(self, cache: CacheStore) -> None:
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        assert await cache.delete("a") is True
        assert await cache.delete_many(["b", "c"]) is True
        assert await cache.delete_many([]) is False

        for key in ("a", "b", "c"):
            assert await cache.get(key) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_flushes_everything(self, cache: CacheStore) -> None:
        await cache.set("a", 1, tags=["t"])

        assert await cache.clear() is True
        assert await cache.redis.dbsize() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_or_set_calls_factory_once(self, cache: CacheStore) -> None:
        """A miss runs the factory; the background write serves later reads."""
        factory = AsyncMock(return_value={"name": "Coffee Mug"})

        first = await cache.get_or_set("product:mug", factory, tags=["products"])
        await cache.drain()
        second = await cache.get_or_set("product:mug", factory)

        assert first == second == {"name": "Coffee Mug"}
        assert factory.await_count == 1
        assert await cache.redis.sismember("test:tag:products", "product:mug")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_or_set_factory_error_propagates(self, cache: CacheStore) -> None:
        """Factory failures reach the caller and nothing is cached."""
        factory = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError, match="db down"):
            await cache.get_or_set("product:mug", factory)

        await cache.drain()
        assert await cache.get("product:mug") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_counters_hashes_and_sorted_sets(self, cache: CacheStore) -> None:
        assert await cache.increment("views") == 1
        assert await cache.increment("views", 5) == 6

        await cache.hset("session:1", "cart", {"items": 2})
        await cache.redis.hset("test:session:1", "raw", "plain-text")
        assert await cache.hget("session:1", "cart") == {"items": 2}
        assert await cache.hgetall("session:1") == {"cart": {"items": 2}, "raw": "plain-text"}

        await cache.zadd("leaderboard", 10, "alice")
        await cache.zadd("leaderboard", 5, "bob")
        assert await cache.zrange("leaderboard", 0, -1) == ["bob", "alice"]
        assert await cache.zrange("leaderboard", 0, 0, with_scores=True) == [
            {"member": "bob", "score": 5.0}
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ping(self, cache: CacheStore) -> None:
        assert await cache.ping() is True


class TestCacheStoreDisabled:
    """A store without a backend returns neutral values."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_neutral_values(self) -> None:
        cache = CacheStore(None)

        assert cache.enabled is False
        assert await cache.get("k") is None
        assert await cache.set("k", 1) is False
        assert await cache.delete("k") is False
        assert await cache.delete_many(["k"]) is False
        assert await cache.invalidate_tag("t") is False
        assert await cache.clear() is False
        assert await cache.increment("k") is None
        assert await cache.hset("h", "f", 1) is False
        assert await cache.hget("h", "f") is None
        assert await cache.hgetall("h") is None
        assert await cache.zadd("z", 1, "m") is False
        assert await cache.zrange("z", 0, -1) == []
        assert await cache.ping() is False
        assert await cache.get_stats() == {"enabled": False}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_or_set_uses_factory(self) -> None:
        cache = CacheStore(None)
        factory = AsyncMock(return_value=42)

        assert await cache.get_or_set("k", factory) == 42
        assert await cache.get_or_set("k", factory) == 42
        assert factory.await_count == 2


class TestCacheStoreBackendFailures:
    """Backend errors are logged and reported as misses or False."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_never_raise(self) -> None:
        cache = CacheStore(failing_redis(), key_prefix="test:")

        assert await cache.get("k") is None
        assert await cache.set("k", 1) is False
        assert await cache.delete("k") is False
        assert await cache.invalidate_tag("t") is False
        assert await cache.clear() is False
        assert await cache.increment("k") is None
        assert await cache.ping() is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_background_write_is_counted(self) -> None:
        """get_or_set still returns the value when the write fails."""
        cache = CacheStore(failing_redis(), key_prefix="test:")
        before = write_failures("rejected")

        value = await cache.get_or_set("k", AsyncMock(return_value="fresh"))
        await cache.drain()

        assert value == "fresh"
        assert write_failures("rejected") == before + 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_slow_background_write_times_out(self) -> None:
        """Writes exceeding write_timeout are abandoned and counted."""

        async def slow_setex(*args: Any) -> None:
            await asyncio.sleep(5)

        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.setex = AsyncMock(side_effect=slow_setex)
        cache = CacheStore(client, write_timeout=0.05)
        before = write_failures("timeout")

        value = await cache.get_or_set("k", AsyncMock(return_value=[1, 2]))
        await cache.drain()

        assert value == [1, 2]
        assert write_failures("timeout") == before + 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_from_info(self) -> None:
        client = MagicMock()
        client.info = AsyncMock(
            side_effect=[
                {"total_commands_processed": 12, "keyspace_hits": 3},
                {"used_memory_human": "1.2M"},
            ]
        )
        client.dbsize = AsyncMock(return_value=7)
        cache = CacheStore(client)

        stats = await cache.get_stats()

        assert stats == {
            "enabled": True,
            "connected": True,
            "db_size": 7,
            "total_commands_processed": 12,
            "used_memory_human": "1.2M",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_error(self) -> None:
        client = MagicMock()
        client.info = AsyncMock(side_effect=ConnectionError("down"))
        cache = CacheStore(client)

        assert await cache.get_stats() == {"enabled": True, "error": "down"}
