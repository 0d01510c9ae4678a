"""
Create the tables owned by the pipeline (error ledger, job-run history)
on the ledger database. Target sink tables are never created here.
"""

import asyncio
import logging

from core.config import settings
from core.database import Database
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.error_ledger import MigrationErrorLog  # noqa: F401
from models.job_run import MigrationJobRun  # noqa: F401

logger = logging.getLogger(__name__)


async def init_database(database: Database) -> None:
    logger.info(f"Connecting to ledger database '{database.name}'...")

    async with database.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")


async def main() -> None:
    database = Database("ledger", settings.LEDGER_DATABASE_URL)
    try:
        await init_database(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
