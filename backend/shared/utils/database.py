"""
Async database access for the meet store and the completion ledger.

Postgres through asyncpg when deployed; SQLite through aiosqlite for local
runs and tests. Sessions come in two flavours: ``read_session`` never
commits, ``write_session`` commits on clean exit and rolls back otherwise.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.models.orm import Base
from shared.utils.logging import get_logger

logger = get_logger(__name__)


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine keyword arguments for the configured backend."""
    if settings.is_sqlite:
        return {"echo": settings.debug}
    timeout = settings.db_command_timeout
    return {
        "echo": settings.debug,
        "pool_size": settings.db_pool_min,
        "max_overflow": max(settings.db_pool_max - settings.db_pool_min, 0),
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "connect_args": {"timeout": timeout, "command_timeout": timeout},
    }


class DatabaseManager:
    """Owns the engine and hands out scoped sessions."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._engine

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._sessions

    async def connect(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(self._settings.database_url, **engine_options(self._settings))
        self._sessions = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def ping(self) -> None:
        """Round-trip a trivial query so a bad URL fails at startup, not mid-run."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        """Create missing tables. Existing tables are left untouched."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready")

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("database_disconnected")

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory()() as session:
            async with session.begin():
                yield session
