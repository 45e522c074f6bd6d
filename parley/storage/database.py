"""Async database engine and session management."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from parley.config import Settings
from parley.storage.models import Base

EXPECTED_TABLES = frozenset({"messages", "usage_transactions"})


class Database:
    def __init__(self, settings: Settings) -> None:
        url = settings.db_url
        engine_kwargs: dict[str, Any] = {"echo": settings.log_level == "debug"}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Verify connection and that the tables exist."""
        async with self.engine.begin() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = EXPECTED_TABLES - tables
        if missing:
            raise RuntimeError(f"Missing database tables: {sorted(missing)}")

    async def create_all(self) -> None:
        """Create missing tables (SQLite, tests, first boot)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
