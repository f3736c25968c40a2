"""Async engine, session factory and lightweight schema upgrades."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

# Columns added to ``media`` after the first release; older databases get them
# through ``ALTER TABLE`` because ``create_all`` never touches existing tables.
MEDIA_COLUMN_UPGRADES: tuple[tuple[str, str], ...] = (
    ("audience_rating", "FLOAT"),
    ("tmdb_id", "VARCHAR(32)"),
    ("imdb_id", "VARCHAR(32)"),
)


class Base(DeclarativeBase):
    metadata = MetaData()


class Database:
    """Owns the async engine used by the candidate source and pool store."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create missing tables and add columns missing from older ``media`` tables."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._upgrade_media_table)

    @staticmethod
    def _upgrade_media_table(sync_connection) -> None:
        inspector = inspect(sync_connection)
        if "media" not in inspector.get_table_names():
            return
        existing = {column["name"] for column in inspector.get_columns("media")}
        for name, ddl_type in MEDIA_COLUMN_UPGRADES:
            if name in existing:
                continue
            sync_connection.execute(text(f"ALTER TABLE media ADD COLUMN {name} {ddl_type}"))
            existing.add(name)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session
