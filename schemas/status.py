"""
Pydantic schemas for runtime state: drain status, worker status, job and
batch outcomes, error ledger entries.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from models.base import JobState, WorkerState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Message log
# ============================================================================

class PartitionOffsets(BaseModel):
    """Log-end and committed position of one partition for one group"""
    partition: int
    log_end_offset: int = Field(..., ge=0)
    committed_offset: Optional[int] = Field(None, description="None when the group never committed")

    @property
    def lag(self) -> int:
        committed = self.committed_offset if self.committed_offset is not None and self.committed_offset >= 0 else 0
        return max(self.log_end_offset - committed, 0)


class DrainStatus(BaseModel):
    """
    Aggregated consumption state of a consumer group on its topic.

    Derived on every poll and never persisted. A group is drained when
    nothing was ever produced (log end 0) or everything produced has been
    consumed (lag 0).
    """
    group_id: str
    topic: str
    log_end_offset: int = 0
    lag: int = 0
    partitions: int = 0
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def drained(self) -> bool:
        return self.log_end_offset == 0 or self.lag == 0

    @classmethod
    def from_partitions(
        cls,
        group_id: str,
        topic: str,
        partitions: List[PartitionOffsets]
    ) -> "DrainStatus":
        return cls(
            group_id=group_id,
            topic=topic,
            log_end_offset=sum(p.log_end_offset for p in partitions),
            lag=sum(p.lag for p in partitions),
            partitions=len(partitions),
        )


# ============================================================================
# Pipeline outcomes
# ============================================================================

class PublishResult(BaseModel):
    """Outcome of one extractor/publisher run"""
    job_name: str
    records_sent: int = 0
    records_failed: int = 0
    pages: int = 0
    synthesized_keys: int = 0
    stopped_by: str = "empty_page"


class BatchOutcome(BaseModel):
    """Per-batch counters kept by the batch consumer"""
    topic: str
    partition: int
    first_offset: Optional[int] = None
    last_offset: Optional[int] = None
    received: int = 0
    parse_failed: int = 0
    filtered_out: int = 0
    rejected: int = 0
    accepted: int = 0
    writes_ok: int = 0
    writes_failed: int = 0
    committed: bool = False


class ConsumerStats(BaseModel):
    """Running totals across all batches of one consumer worker"""
    batches: int = 0
    batches_fatal: int = 0
    received: int = 0
    parse_failed: int = 0
    filtered_out: int = 0
    rejected: int = 0
    accepted: int = 0
    writes_ok: int = 0
    writes_failed: int = 0

    def add(self, outcome: BatchOutcome) -> None:
        self.batches += 1
        for field in ("received", "parse_failed", "filtered_out", "rejected",
                      "accepted", "writes_ok", "writes_failed"):
            setattr(self, field, getattr(self, field) + getattr(outcome, field))


class WorkerStatus(BaseModel):
    """Describe result of a supervised background worker"""
    name: str
    state: WorkerState
    restarts: int = 0
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class JobRunResult(BaseModel):
    """Outcome of one job lifecycle inside the sequencer"""
    job_name: str
    cycle: int = 1
    state: JobState = JobState.IDLE
    records_sent: int = 0
    producer_attempts: int = 0
    drained: bool = False
    drain_status: Optional[DrainStatus] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


# ============================================================================
# Error ledger
# ============================================================================

class ErrorLedgerEntry(BaseModel):
    """One per-row failure handed to the error ledger"""
    source_table: str
    target_table: str
    source_primary_key: Optional[str] = None
    failed_data: str = "{}"
    error_message: str
    migration_step: str
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True
