"""
Database handles with SQLAlchemy async

Each configured database (error ledger, every target sink connection) gets
its own ``Database`` object. Handles are created once by the pipeline
context and passed to whoever needs them; nothing here is created at import
time.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


class Database:
    """
    One async engine plus its session factory.

    Responsibilities:
    - Own the engine lifecycle (dispose on close)
    - Hand out sessions (ORM work) and connections (Core statements)
    """

    def __init__(
        self,
        name: str,
        url: str,
        echo: bool = False,
        pool_size: Optional[int] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.name = name
        self.url = url

        if engine is not None:
            self.engine = engine
        elif url.startswith("sqlite"):
            # SQLite connections cannot be shared across pools
            self.engine = create_async_engine(url, echo=echo, poolclass=NullPool)
        else:
            self.engine = create_async_engine(
                url,
                echo=echo,
                pool_size=pool_size or settings.DB_POOL_SIZE,
                pool_pre_ping=True,
            )

        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get database session"""
        async with self.session_maker() as session:
            yield session

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncConnection]:
        """Connection with a transaction committed on exit."""
        async with self.engine.begin() as conn:
            yield conn

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database '{self.name}' ping failed: {str(e)}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.debug(f"Database '{self.name}' disposed")


class DatabaseRegistry:
    """Named ``Database`` handles, created lazily and disposed together."""

    def __init__(self, urls: Dict[str, str], echo: bool = False):
        self._urls = dict(urls)
        self._echo = echo
        self._databases: Dict[str, Database] = {}

    def names(self):
        return list(self._urls)

    def get(self, name: str) -> Database:
        if name not in self._databases:
            if name not in self._urls:
                raise KeyError(f"No database URL configured for connection '{name}'")
            self._databases[name] = Database(name, self._urls[name], echo=self._echo)
        return self._databases[name]

    async def dispose_all(self) -> None:
        for database in list(self._databases.values()):
            try:
                await database.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose database '{database.name}': {str(e)}")
        self._databases.clear()
