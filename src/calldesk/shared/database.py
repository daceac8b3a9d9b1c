"""
Async SQLAlchemy engine and per-request sessions.

The engine is created lazily on first use so importing the app (and the
test suite, which overrides `get_db_session`) never opens a connection.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from calldesk.config import get_settings
from calldesk.shared.logging import get_logger

logger = get_logger(__name__)

# Stable constraint names for migrations.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base for the calls and call_logs tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class DatabaseManager:
    """Owns the engine and the session factory of one database URL."""

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url or get_settings().database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            options: dict[str, Any] = {"echo": get_settings().debug, "pool_pre_ping": True}
            # SQLite pools are not sized
            if not self._database_url.startswith("sqlite"):
                options.update(pool_size=5, max_overflow=10)
            self._engine = create_async_engine(self._database_url, **options)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def create_all(self) -> None:
        """Create missing tables (local development only)."""
        import calldesk.calls.models  # noqa: F401  registers the tables

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")


_db_manager: DatabaseManager | None = None


def get_database_manager() -> DatabaseManager:
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success.

    The lifecycle service commits after each audited mutation; the final
    commit here flushes anything left over (read-only requests are no-ops).
    """
    async with get_database_manager().session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


__all__ = [
    "Base",
    "DatabaseManager",
    "get_database_manager",
    "get_db_session",
]
