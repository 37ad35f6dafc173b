"""
Cache stores used by repositories to memoise read results.

Two drivers, selected by Settings.CACHE_DRIVER:
- memory: per-process dict with expiry timestamps (tests, single worker)
- redis:  shared across workers; values are pickled, ttl via SETEX
"""

import pickle
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from querylayer.database.redis_driver import RedisDriver
from querylayer.logging.logger import get_logger

logger = get_logger("cache")

# Distinguishes a stored None from a miss
MISSING = object()


class CacheStore(ABC):
    """Key-value cache keyed by opaque strings."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    async def has(self, key: str) -> bool:
        pass

    @abstractmethod
    async def put(self, key: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    async def forget(self, key: str) -> bool:
        pass

    @abstractmethod
    async def forget_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix; returns how many were removed."""

    @abstractmethod
    async def flush(self) -> None:
        pass

    async def remember(self, key: str, ttl: int, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or await factory() and store its result (None included)."""
        value = await self.get(key, MISSING)
        if value is not MISSING:
            logger.debug(f"Cache hit: {key}")
            return value

        logger.debug(f"Cache miss: {key}")
        value = await factory()
        await self.put(key, value, ttl)
        return value


class MemoryCache(CacheStore):
    """
    In-process store; entries expire lazily on access. Values are pickled like
    RedisCache does, so every hit returns a fresh copy.
    """

    def __init__(self):
        self._items: Dict[str, Tuple[float, bytes]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._items.get(key)
        if entry is None:
            return False
        expires_at, _ = entry
        if expires_at <= time.monotonic():
            del self._items[key]
            return False
        return True

    async def get(self, key: str, default: Any = None) -> Any:
        if not self._alive(key):
            return default
        return pickle.loads(self._items[key][1])

    async def has(self, key: str) -> bool:
        return self._alive(key)

    async def put(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            self._items.pop(key, None)
            return
        self._items[key] = (time.monotonic() + ttl, pickle.dumps(value))

    async def forget(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    async def forget_prefix(self, prefix: str) -> int:
        keys = [key for key in self._items if key.startswith(prefix)]
        for key in keys:
            del self._items[key]
        return len(keys)

    async def flush(self) -> None:
        self._items.clear()


class RedisCache(CacheStore):
    """Redis-backed store. Entities are pickled, so they come back detached from any session."""

    def __init__(self, driver: RedisDriver, scan_count: int = 500):
        self.driver = driver
        self.scan_count = scan_count

    @property
    def client(self):
        return self.driver.get_client()

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self.client.get(key)
        if raw is None:
            return default
        return pickle.loads(raw)

    async def has(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def put(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            await self.client.delete(key)
            return
        await self.client.setex(key, ttl, pickle.dumps(value))

    async def forget(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def forget_prefix(self, prefix: str) -> int:
        removed = 0
        batch = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=self.scan_count):
            batch.append(key)
            if len(batch) >= self.scan_count:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def flush(self) -> None:
        await self.client.flushdb()


def build_cache(driver_name: str, redis_driver: Optional[RedisDriver] = None) -> CacheStore:
    """Create the cache store named by CACHE_DRIVER."""
    driver_name = (driver_name or "memory").lower()

    if driver_name == "memory":
        return MemoryCache()

    if driver_name == "redis":
        if redis_driver is None:
            raise ValueError("CACHE_DRIVER=redis requires a RedisDriver")
        return RedisCache(redis_driver)

    raise ValueError(f"Unsupported CACHE_DRIVER={driver_name!r}")
