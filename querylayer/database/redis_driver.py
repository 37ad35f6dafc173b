import redis.asyncio as redis
from .base import BaseDatabaseDriver

class RedisDriver(BaseDatabaseDriver):
    """Redis client holder; values are stored as bytes so pickled entities survive."""

    name = "redis"

    def __init__(self, url: str):
        self.url = url
        self.client = None

    async def connect(self):
        if self.client is None:
            self.client = redis.from_url(self.url, decode_responses=False)
        await self.client.ping()

    async def disconnect(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    def get_client(self):
        if self.client is None:
            # Connections are opened lazily by redis-py, so a client is usable before connect()
            self.client = redis.from_url(self.url, decode_responses=False)
        return self.client
