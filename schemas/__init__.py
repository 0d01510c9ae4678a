"""
Pydantic schemas for configuration, runtime state and the ops API.

Schemas:
    jobs: JobSpec, SinkSpec, ColumnSpec, FilterSpec, OrchestratorConfig
    status: DrainStatus, PartitionOffsets, PublishResult, BatchOutcome,
        ConsumerStats, WorkerStatus, JobRunResult, ErrorLedgerEntry
    api: API endpoint response schemas

Usage:
    from schemas.jobs import JobSpec, OrchestratorConfig
    from schemas.status import DrainStatus

Example:
    config = OrchestratorConfig.from_file("config/jobs.json")
    for job in config.jobs:
        print(job.name, job.target_tables)

Validation:
    Table, schema and column names are checked against an identifier
    allow-list when a job is loaded, so they can be used as SQL identifiers
    without string interpolation of untrusted values.
"""

__all__ = [
    "JobSpec",
    "SinkSpec",
    "ColumnSpec",
    "FilterSpec",
    "OrchestratorConfig",
    "DrainStatus",
    "PartitionOffsets",
    "PublishResult",
    "BatchOutcome",
    "WorkerStatus",
    "JobRunResult",
    "ErrorLedgerEntry",
    "HealthCheckResponse",
    "JobRunsResponse",
    "ErrorLedgerResponse",
]
