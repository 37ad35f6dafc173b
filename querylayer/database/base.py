from abc import ABC, abstractmethod
from querylayer.logging.logger import get_logger

logger = get_logger("database")


class BaseDatabaseDriver(ABC):
    """Connection lifecycle shared by the drivers a DatabaseManager owns."""

    name: str = "driver"

    @abstractmethod
    async def connect(self):
        """Open or verify the underlying connection."""

    @abstractmethod
    async def disconnect(self):
        """Release pooled connections."""

    async def __aenter__(self):
        await self.connect()
        logger.info(f"{self.name} driver connected")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        logger.info(f"{self.name} driver disconnected")
