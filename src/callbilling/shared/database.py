"""
Async SQLAlchemy engine and session factory for the billing tables.
"""

from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from callbilling.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for the calls, agents and ledger tables."""


def _engine_options(database_url: str, echo: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    # SQLite (tests, local runs) has no connection pool to size
    if not database_url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return options


class DatabaseManager:
    """Lazily builds the engine and the session factory the ledger and repositories share.

    Sessions keep attributes after commit so ledger results can be read once the unit
    of work is closed.
    """

    def __init__(self, database_url: str | None = None, echo: bool | None = None) -> None:
        settings = get_settings()
        self.database_url = database_url or settings.database_url
        self._echo = settings.debug if echo is None else echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.database_url, **_engine_options(self.database_url, self._echo)
            )
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
        """Create every billing table (development and tests; deployments use Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Dispose of the engine; the manager can be reused afterwards."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


__all__ = [
    "Base",
    "DatabaseManager",
]
