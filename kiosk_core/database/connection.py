"""Database engine and session management."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from kiosk_core.database.models import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Owns the async engine and session factory for local kiosk state.

    Constructed once by the runtime and handed to the stores that need it.
    """

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy async URL (e.g. ``sqlite+aiosqlite:///kiosk.db``)
            echo: Echo SQL statements
        """
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session that commits on success and rolls back on error.

        Yields:
            AsyncSession: Database session
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create all tables that don't exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized", url=self.url)

    async def ping(self) -> None:
        """Run ``SELECT 1``; raises if the database is unreachable."""
        async with self.session() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

    async def close(self) -> None:
        """Dispose of the engine and its connections."""
        await self.engine.dispose()
        logger.info("database_closed")
