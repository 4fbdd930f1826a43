"""Core classes and mixins for DB connections"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, cast
from typing import Callable, AsyncContextManager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base

from components.core.config import Settings

Base = declarative_base()
SessionMaker = Callable[[], AsyncContextManager[AsyncSession]]


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # Installments cascade on loan deletion only when SQLite enforces FKs.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    def __init__(self, settings: Settings, engine: Optional[AsyncEngine] = None) -> None:
        """Initialize DatabaseManager with optional engine for testing."""
        self.settings = settings
        self.engine = engine or self._create_engine()
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self._session_maker = self._build_session_maker()

    def _create_engine(self) -> AsyncEngine:
        """Create async engine for the configured database."""
        if self.settings.is_sqlite:
            return create_async_engine(self.settings.DB_URL, echo=self.settings.DB_ECHO)
        return create_async_engine(
            self.settings.DB_URL,
            echo=self.settings.DB_ECHO,
            pool_pre_ping=True,  # Enable connection health checks
            pool_size=5,
            max_overflow=10,
        )

    def _build_session_maker(self) -> SessionMaker:
        return cast(
            SessionMaker,
            async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            ),
        )

    def get_session(self) -> SessionMaker:
        """Returns SessionMaker for database sessions."""
        if not self.engine:
            raise ValueError("Database engine wasn't initialized")
        return self._session_maker

    @asynccontextmanager
    async def get_db(self) -> AsyncIterator[AsyncSession]:
        """Get database session context manager."""
        async_session = self.get_session()
        async with async_session() as session:
            try:
                yield session
            finally:
                await session.close()

    async def create_all(self) -> None:
        """Create all tables registered on Base."""
        # Import models so they are registered on Base.metadata
        import components.customer.models  # noqa: F401
        import components.loan.models  # noqa: F401
        import components.notification.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
