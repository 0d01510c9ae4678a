"""
Idempotent upserts into target sinks.

One ``TargetSink`` per (job, sink) pair. The target table is described as
data (SQLAlchemy Core ``Table`` built from validated identifiers) and every
value is bound as a parameter. Conflict handling follows the sink's
dialect:

- postgresql / sqlite: ``INSERT ... ON CONFLICT (key) DO UPDATE``
- mysql / mariadb: ``INSERT ... ON DUPLICATE KEY UPDATE``

Only the columns computed by the job are written; server-maintained audit
columns (``mod_log`` and friends) are left to the database.
"""

import asyncio
from typing import Any, List

import sqlalchemy as sa
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from core.database import Database, DatabaseRegistry
from core.exceptions import ConfigurationError, RowWriteError, SinkUnavailableError
from pipeline.transform import UpsertRow
from schemas.jobs import JobSpec, SinkSpec
import logging

logger = logging.getLogger(__name__)

# Failures that always mean "the sink is unreachable"
CONNECTIVITY_ERRORS = (
    DisconnectionError,
    PoolTimeoutError,
    ConnectionError,
    asyncio.TimeoutError,
)

# Raised both for lost connections and for bad statements or rows
# (missing column, deadlock, CHECK failure, driver-side value errors)
AMBIGUOUS_ERRORS = (
    InterfaceError,
    OperationalError,
    OSError,
)


def is_connectivity_error(error: BaseException) -> bool:
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, CONNECTIVITY_ERRORS)


def is_ambiguous_error(error: BaseException) -> bool:
    return isinstance(error, AMBIGUOUS_ERRORS)


class TargetSink:
    """
    Upsert writer for one job into one target table.

    Attributes:
        spec: Sink descriptor (name, connection, table, schema)
        database: Handle of the sink's connection
        table: Core table with the job's key column and mapped columns
    """

    def __init__(self, job: JobSpec, spec: SinkSpec, database: Database):
        self.job = job
        self.spec = spec
        self.database = database

        self.table = sa.Table(
            spec.table,
            sa.MetaData(),
            sa.Column(job.key_column, primary_key=True),
            *[sa.Column(c.column) for c in job.columns],
            schema=spec.schema_name,
        )
        self.update_columns: List[str] = [c.column for c in job.columns if c.update_on_conflict]
        self.keep_on_null = {c.column for c in job.columns if c.keep_existing_on_null}

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def qualified_name(self) -> str:
        return self.spec.qualified_name

    def build_upsert(self, row: UpsertRow) -> Any:
        """Dialect-specific INSERT ... upsert statement for ``row``."""
        dialect = self.database.dialect
        key = self.job.key_column
        values = row.as_dict()

        if dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(self.table).values(**values)
            # Re-assigning the key keeps a conflict a no-op when nothing else is updatable
            updates = self.update_columns or [key]
            return stmt.on_duplicate_key_update({
                c: sa.func.ifnull(stmt.inserted[c], self.table.c[c]) if c in self.keep_on_null else stmt.inserted[c]
                for c in updates
            })

        if dialect == "postgresql":
            stmt = postgresql.insert(self.table).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(self.table).values(**values)
        else:
            raise ConfigurationError(
                f"Unsupported sink dialect '{dialect}'",
                context={"sink": self.name, "table": self.qualified_name}
            )

        if not self.update_columns:
            return stmt.on_conflict_do_nothing(index_elements=[key])
        return stmt.on_conflict_do_update(
            index_elements=[key],
            set_={
                c: sa.func.coalesce(stmt.excluded[c], self.table.c[c]) if c in self.keep_on_null else stmt.excluded[c]
                for c in self.update_columns
            },
        )

    async def write(self, row: UpsertRow) -> None:
        """
        Upsert one row in its own transaction.

        Errors that may or may not be connection-level are settled with a
        ping: the sink only counts as unavailable when the ping fails too.

        Raises:
            SinkUnavailableError: Connection-level failure
            RowWriteError: Any other failure for this row
        """
        stmt = self.build_upsert(row)
        context = {"sink": self.name, "table": self.qualified_name, "primary_key": row.key}

        try:
            async with self.database.begin() as conn:
                await conn.execute(stmt)
        except (SQLAlchemyError, ConnectionError, OSError, asyncio.TimeoutError) as e:
            unavailable = is_connectivity_error(e)
            if not unavailable and is_ambiguous_error(e):
                unavailable = not await self.database.ping()
            if unavailable:
                raise SinkUnavailableError(
                    f"Sink '{self.name}' unavailable",
                    context=context,
                    original_exception=e
                )
            raise RowWriteError(
                f"Upsert into {self.qualified_name} failed",
                context=context,
                original_exception=e
            )


def build_sinks(job: JobSpec, databases: DatabaseRegistry) -> List[TargetSink]:
    """Resolve every SinkSpec of ``job`` against the configured connections."""
    sinks = []
    for spec in job.sinks:
        try:
            database = databases.get(spec.connection)
        except KeyError as e:
            raise ConfigurationError(
                f"Sink '{spec.name}' references unknown connection '{spec.connection}'",
                context={"job_name": job.name, "known_connections": databases.names()},
                original_exception=e
            )
        sinks.append(TargetSink(job, spec, database))
    return sinks
