"""
Best-effort writer for the migration error ledger.

The ledger is an ops interface: the pipeline only ever appends to it, and a
ledger failure must never block or fail the record being processed.
"""

import json
from typing import Any, Iterable, List, Optional

from core.database import Database
from models.error_ledger import MigrationErrorLog
from schemas.jobs import JobSpec
from schemas.status import ErrorLedgerEntry
import logging

logger = logging.getLogger(__name__)


def serialize_payload(payload: Any) -> str:
    """JSON text of a failed payload; never raises."""
    if payload is None:
        return "{}"
    try:
        return json.dumps(payload, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return json.dumps({"unserializable": repr(payload)})


def build_entry(
    job: JobSpec,
    error_message: str,
    payload: Any = None,
    primary_key: Any = None,
    target_tables: Optional[Iterable[str]] = None,
) -> ErrorLedgerEntry:
    """Ledger entry for ``job``; defaults to all of the job's target tables."""
    tables = list(target_tables) if target_tables is not None else job.target_tables
    return ErrorLedgerEntry(
        source_table=job.source_table,
        target_table=",".join(tables),
        source_primary_key=str(primary_key) if primary_key is not None else None,
        failed_data=serialize_payload(payload),
        error_message=error_message[:4000],
        migration_step=job.migration_step,
    )


class ErrorLedger:
    """
    Append-only sink for per-row failures.

    ``record`` and ``record_many`` swallow every storage error after logging
    it; callers never need a try/except around them.
    """

    def __init__(self, database: Optional[Database]):
        self.database = database
        self.written = 0
        self.dropped = 0

    async def record(self, entry: ErrorLedgerEntry) -> bool:
        return await self.record_many([entry]) == 1

    async def record_many(self, entries: List[ErrorLedgerEntry]) -> int:
        if not entries:
            return 0

        for entry in entries:
            logger.warning(
                f"[{entry.migration_step}] {entry.error_message} "
                f"key={entry.source_primary_key} target={entry.target_table}"
            )

        if self.database is None:
            self.dropped += len(entries)
            return 0

        try:
            async with self.database.session() as session:
                session.add_all([
                    MigrationErrorLog(
                        source_table=e.source_table,
                        target_table=e.target_table,
                        source_primary_key=e.source_primary_key,
                        failed_data=e.failed_data,
                        error_message=e.error_message,
                        migration_step=e.migration_step,
                        created_at=e.created_at.replace(tzinfo=None),
                    )
                    for e in entries
                ])
                await session.commit()
        except Exception as e:
            self.dropped += len(entries)
            logger.error(f"Failed to write {len(entries)} error ledger entries: {str(e)}")
            return 0

        self.written += len(entries)
        return len(entries)
