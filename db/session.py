"""
db/session.py — Database Connection & Session Management
=========================================================
Async SQLAlchemy engine for the off-chain mapping store.
One Database object is built in main.py (or per test) and injected into
the OffChainMappingStore; init() creates the tables on startup.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger("digiid.db")


class Base(DeclarativeBase):
    """Base class all database models inherit from."""
    pass


def _async_url(url: str) -> str:
    # Convert standard postgres:// URL to async postgresql+asyncpg://
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:

    def __init__(self, url: str, pool_size: int = 10, max_overflow: int = 20, echo: bool = False):
        self.url = _async_url(url)
        engine_kwargs = {"echo": echo}
        # sqlite uses a static/singleton pool; pool sizing only applies to server databases
        if not self.url.startswith("sqlite"):
            engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
        self.engine = create_async_engine(self.url, **engine_kwargs)
        self.sessionmaker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            echo=settings.DEBUG,
        )

    async def init(self):
        """Create all tables on startup if they don't exist."""
        from db.models import OffChainMappingRecord  # noqa: F401, import registers the table
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created / verified.")

    async def dispose(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One unit of work: commits on success, rolls back on any error."""
        async with self.sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
