"""
FastAPI dependencies
"""

from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import Database

_ledger_database: Optional[Database] = None


def get_ledger_database() -> Database:
    """Ledger database handle, created on first use."""
    global _ledger_database
    if _ledger_database is None:
        _ledger_database = Database("ledger", settings.LEDGER_DATABASE_URL)
    return _ledger_database


async def close_ledger_database() -> None:
    global _ledger_database
    if _ledger_database is not None:
        await _ledger_database.dispose()
        _ledger_database = None


async def get_db() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with get_ledger_database().session() as session:
        yield session
