import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_chat.cache import MemoryCache, RedisCache


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_set_get_delete(self) -> None:
        cache = MemoryCache()

        await cache.set("presence:user:1", "online", ttl=60)

        assert await cache.get("presence:user:1") == "online"
        assert await cache.exists("presence:user:1") is True
        await cache.delete("presence:user:1")
        assert await cache.get("presence:user:1") is None

    @pytest.mark.asyncio
    async def test_expired_entries_disappear(self) -> None:
        cache = MemoryCache()
        await cache.set("typing:1:2", "1", ttl=10)
        await cache.set("typing:1:3", "1", ttl=10)
        await cache.set("typing:1:4", "1")

        value, _ = cache.cache["typing:1:2"]
        cache.cache["typing:1:2"] = (value, time.monotonic() - 1)

        assert await cache.exists("typing:1:2") is False
        assert sorted(await cache.keys("typing:1:")) == ["typing:1:3", "typing:1:4"]

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self) -> None:
        cache = MemoryCache(max_size=2)
        await cache.set("a", "1")
        await cache.set("b", "2")
        await cache.get("a")

        await cache.set("c", "3")

        assert await cache.get("b") is None
        assert await cache.get("a") == "1"
        assert await cache.get("c") == "3"


class TestRedisCache:
    @pytest.mark.asyncio
    async def test_set_passes_expiry(self) -> None:
        redis = MagicMock()
        redis.set = AsyncMock()
        cache = RedisCache(redis)

        await cache.set("presence:user:1", "online", ttl=300)

        redis.set.assert_awaited_once_with("presence:user:1", "online", ex=300)

    @pytest.mark.asyncio
    async def test_keys_scans_prefix(self) -> None:
        async def scan_iter(match: str):  # type: ignore[no-untyped-def]
            assert match == "typing:5:*"
            for key in ("typing:5:1", "typing:5:2"):
                yield key

        redis = MagicMock()
        redis.scan_iter = scan_iter
        cache = RedisCache(redis)

        assert await cache.keys("typing:5:") == ["typing:5:1", "typing:5:2"]

    @pytest.mark.asyncio
    async def test_ping_failure(self) -> None:
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("redis down"))

        assert await RedisCache(redis).ping() is False
