"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy import text
from typing import AsyncGenerator, Dict

from core.database import Database, DatabaseRegistry
from models.base import Base
from schemas.jobs import JobSpec
from tests.fakes import USERS_DDL, InMemoryLog, sqlite_url


@pytest_asyncio.fixture(scope="function")
async def ledger_db(tmp_path) -> AsyncGenerator[Database, None]:
    """Ledger database with the pipeline-owned tables"""
    database = Database("ledger", sqlite_url(tmp_path, "ledger"))

    async with database.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield database

    await database.dispose()


@pytest_asyncio.fixture(scope="function")
async def sink_dbs(tmp_path) -> AsyncGenerator[DatabaseRegistry, None]:
    """Two target sinks ("live" and "uat"), each with a users table"""
    registry = DatabaseRegistry({
        "live": sqlite_url(tmp_path, "live"),
        "uat": sqlite_url(tmp_path, "uat"),
    })

    for name in registry.names():
        async with registry.get(name).begin() as conn:
            await conn.execute(text(USERS_DDL))

    yield registry

    await registry.dispose_all()


@pytest.fixture
def job_spec_data() -> Dict:
    """Raw job definition for the users entity"""
    return {
        "name": "users",
        "source_table": "legacy_users",
        "topic": "users_migration",
        "group_id": "users-migration",
        "key_field": "id",
        "columns": [
            {"column": "name", "transforms": ["strip"]},
            {"column": "email", "transforms": ["clean_email"]},
            {"column": "created_log", "source": "ts", "update_on_conflict": False},
        ],
        "filter": {
            "min_date_field": "ts",
            "min_date": "2024-01-01T00:00:00Z",
        },
        "sinks": [
            {"name": "live", "connection": "live", "table": "users"},
            {"name": "uat", "connection": "uat", "table": "users"},
        ],
    }


@pytest.fixture
def job_spec(job_spec_data) -> JobSpec:
    return JobSpec.model_validate(job_spec_data)


@pytest.fixture
def message_log() -> InMemoryLog:
    return InMemoryLog(partitions=1)
