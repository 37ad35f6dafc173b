from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from sqlmodel import SQLModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession
from .base import BaseDatabaseDriver

# session.info key holding callbacks queued by defer()
DEFERRED_KEY = "querylayer_deferred"


class SQLDriver(BaseDatabaseDriver):
    """Async engine plus the session bound to the running unit of work, if any."""

    name = "sql"

    def __init__(self, url: Optional[str] = None, engine: Optional[AsyncEngine] = None, echo: bool = False):
        if engine is None:
            if not url:
                raise ValueError("SQLDriver needs either a database url or an engine")
            engine = create_async_engine(url, echo=echo, future=True)
        self.engine = engine
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        # One variable per driver so two managers in one process never share a session
        self._current_session: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"querylayer_session_{id(self)}", default=None
        )

    async def connect(self):
        """Connect to database (SQLModel engine manages connections)."""
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

    async def disconnect(self):
        """Disconnect from database."""
        await self.engine.dispose()

    async def create_all(self, metadata=None):
        """Create tables for every imported SQLModel (demo and tests; migrations are out of scope)."""
        metadata = metadata if metadata is not None else SQLModel.metadata
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def drop_all(self, metadata=None):
        metadata = metadata if metadata is not None else SQLModel.metadata
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)

    def current_session(self) -> Optional[AsyncSession]:
        """Session of the unit of work running in this context."""
        return self._current_session.get()

    def bind_session(self, session: Optional[AsyncSession]):
        return self._current_session.set(session)

    def unbind_session(self, token) -> None:
        self._current_session.reset(token)

    def defer(self, key: str, callback: Callable[[], Awaitable[Any]]) -> bool:
        """
        Queue callback to run after the unit of work bound in this context ends.
        Returns False (and queues nothing) when no unit is bound. A key is queued once.
        """
        session = self.current_session()
        if session is None:
            return False
        session.info.setdefault(DEFERRED_KEY, {})[key] = callback
        return True

    async def run_deferred(self, session: AsyncSession) -> None:
        for callback in session.info.pop(DEFERRED_KEY, {}).values():
            await callback()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Yield the unit-of-work session when one is active, else a short-lived
        session that commits on success and rolls back on error.
        """
        current = self._current_session.get()
        if current is not None:
            yield current
            return

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
