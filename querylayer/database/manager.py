from typing import Optional
from sqlalchemy.ext.asyncio import AsyncEngine
from querylayer.cache.store import CacheStore, build_cache
from querylayer.config import Settings
from .sql_driver import SQLDriver
from .redis_driver import RedisDriver

class DatabaseManager:
    """
    Application context handed to repositories: settings, SQL driver and cache store.
    Built once at startup and passed along explicitly (no process-wide instance).
    """

    def __init__(
        self,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        cache: Optional[CacheStore] = None,
    ):
        self.settings = settings
        self.sql = SQLDriver(settings.DATABASE_URL, engine=engine, echo=settings.DB_ECHO)
        self.redis = RedisDriver(settings.REDIS_URL) if settings.CACHE_DRIVER.lower() == "redis" else None
        self.cache = cache or build_cache(settings.CACHE_DRIVER, self.redis)

    async def connect(self):
        await self.sql.connect()
        if self.redis is not None:
            await self.redis.connect()

    async def disconnect(self):
        if self.redis is not None:
            await self.redis.disconnect()
        await self.sql.disconnect()
