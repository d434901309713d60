"""
Async SQLAlchemy engine + session factory.

TiDB is wire-compatible with MySQL 5.7, so production uses the aiomysql
driver; tests point the same code at sqlite+aiosqlite.

A Database object is constructed once per process (API lifespan or worker
main) and handed to components explicitly. Nothing here is module-global.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from storystats.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, url: Optional[str] = None, **engine_kwargs) -> None:
        self.url = url or settings.database_url
        if not self.url.startswith("sqlite"):
            engine_kwargs.setdefault("pool_size", settings.db_pool_size)
            engine_kwargs.setdefault("max_overflow", settings.db_max_overflow)
        self.engine: AsyncEngine = create_async_engine(
            self.url,
            pool_pre_ping=True,
            echo=False,
            **engine_kwargs,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init_schema(self) -> None:
        """Create all tables if they don't exist (idempotent)."""
        # Importing models registers the tables on Base.metadata
        from storystats import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialised")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Unit of work: commit on success, roll back on any error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")
