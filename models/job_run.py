from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Float, Text, Boolean, Index
from datetime import datetime, timezone
from models.base import Base, JobState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MigrationJobRun(Base):
    """
    One row per job lifecycle executed by the sequencer.

    Purpose:
    - Audit trail of every cycle/job
    - Timing and drain outcome per entity
    - Backing data for the ops API
    """
    __tablename__ = "migration_job_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    cycle = Column(Integer, nullable=False, default=1)
    job_name = Column(String(100), nullable=False, index=True)
    group_id = Column(String(255), nullable=False)
    topic = Column(String(255), nullable=False)

    state = Column(Enum(JobState), nullable=False, default=JobState.IDLE, index=True)

    # Producer
    records_sent = Column(Integer, default=0)
    producer_attempts = Column(Integer, default=0)

    # Drain
    drained = Column(Boolean, default=False)
    log_end_offset = Column(BigInteger, nullable=True)
    lag = Column(BigInteger, nullable=True)

    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_job_run_name_started", "job_name", "started_at"),
    )
