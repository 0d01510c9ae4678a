"""
SQLAlchemy ORM models for tables owned by the pipeline.

Target sink tables belong to the replacement schemas and are not modelled
here; the pipeline only writes them through parameterized upserts.

Models:
    base: Base declarative class and shared enums (JobState, WorkerState, RunMode)
    error_ledger: Append-only ledger of per-row failures
    job_run: Sequencer job lifecycle history

Usage:
    from models import MigrationErrorLog, MigrationJobRun
    from models.base import JobState
"""

from models.base import Base, JobState, WorkerState, RunMode
from models.error_ledger import MigrationErrorLog
from models.job_run import MigrationJobRun

__all__ = [
    "Base",
    "JobState",
    "WorkerState",
    "RunMode",
    "MigrationErrorLog",
    "MigrationJobRun",
]
