"""
Unit of Work: one transaction boundary shared by every repository call made inside it.
"""

from typing import Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from querylayer.database.sql_driver import SQLDriver
from querylayer.logging.logger import get_logger

logger = get_logger("unit_of_work")


class UnitOfWork:
    """
    Opens a session, binds it to the current context so repositories join it,
    commits on success and rolls back on error. Entered while another unit is
    active, it becomes a SAVEPOINT inside that unit's session.
    """

    def __init__(self, driver: SQLDriver):
        """Initialize UnitOfWork for a driver; the session is opened on enter."""
        if driver is None:
            raise ValueError("Driver must be provided. Use UnitOfWork(manager.sql).")

        self.driver = driver
        self.session: Optional[AsyncSession] = None
        self._savepoint = None
        self._token = None

    @property
    def nested(self) -> bool:
        return self._savepoint is not None

    async def commit(self) -> None:
        """Commit all changes (releases the savepoint when nested)."""
        if self._savepoint is not None:
            if self._savepoint.is_active:
                await self._savepoint.commit()
            return
        await self.session.commit()

    async def rollback(self) -> None:
        """Rollback all changes (back to the savepoint when nested)."""
        if self._savepoint is not None:
            if self._savepoint.is_active:
                await self._savepoint.rollback()
            return
        await self.session.rollback()

    async def flush(self) -> None:
        """Flush session (e.g. to get auto-increment IDs)."""
        await self.session.flush()

    async def __aenter__(self):
        parent = self.driver.current_session()
        if parent is not None:
            self.session = parent
            self._savepoint = await parent.begin_nested()
            return self

        self.session = self.driver.session_factory()
        self._token = self.driver.bind_session(self.session)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                logger.warning(
                    f"Rolling back {'savepoint' if self.nested else 'transaction'}: "
                    f"{exc_type.__name__}: {exc_val}"
                )
                await self.rollback()
            else:
                await self.commit()
        finally:
            if self._token is not None:
                self.driver.unbind_session(self._token)
                self._token = None
                try:
                    # Cache invalidations queued by repositories run after commit or rollback
                    await self.driver.run_deferred(self.session)
                finally:
                    await self.session.close()
