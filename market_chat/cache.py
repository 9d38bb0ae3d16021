"""
TTL cache with swappable backends.

Presence markers and typing markers are short-lived facts that expire on
their own. Both backends share one interface so the realtime layer does not
care whether it runs against Redis or inside a single process.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, List, Optional, Tuple

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key/value store where every entry may carry a time-to-live."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for ``key`` or None if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if ``key`` is present and not expired."""

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        """Return live keys that start with ``prefix``."""

    async def ping(self) -> bool:
        return True


class MemoryCache(CacheBackend):
    """In-process LRU cache with per-entry expiry."""

    def __init__(self, *, max_size: int = 10000):
        self.cache: OrderedDict[str, Tuple[Any, Optional[float]]] = OrderedDict()
        self.max_size = max_size

    def _expired(self, key: str) -> bool:
        _, expires_at = self.cache[key]
        return expires_at is not None and expires_at <= time.monotonic()

    async def get(self, key: str) -> Optional[str]:
        if key not in self.cache:
            return None
        if self._expired(key):
            del self.cache[key]
            return None
        # Move to end (most recently used)
        self.cache.move_to_end(key)
        value: str = self.cache[key][0]
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        if key in self.cache:
            self.cache.move_to_end(key)
        self.cache[key] = (value, expires_at)
        if len(self.cache) > self.max_size:
            self.cache.popitem(last=False)

    async def delete(self, key: str) -> None:
        self.cache.pop(key, None)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def keys(self, prefix: str) -> List[str]:
        live = []
        for key in list(self.cache.keys()):
            if not key.startswith(prefix):
                continue
            if self._expired(key):
                del self.cache[key]
                continue
            live.append(key)
        return live


class RedisCache(CacheBackend):
    """Cache backed by Redis key expiry."""

    def __init__(self, redis: "Redis[str]"):
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        value: Optional[str] = await self._redis.get(key)
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def keys(self, prefix: str) -> List[str]:
        return [key async for key in self._redis.scan_iter(match=f"{prefix}*")]

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("Redis cache ping failed: %s", e)
            return False
