from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, Index
from datetime import datetime, timezone
from models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MigrationErrorLog(Base):
    """
    Append-only ledger of per-row migration failures.

    Purpose:
    - Offline remediation (inspect, fix at source, replay)
    - Reconciliation of partial replication across sinks

    Design:
    - Written best-effort by the batch consumer; never read by the pipeline
    - source_primary_key is NULL for payloads that could not be parsed
    - target_table holds one table or a comma-joined list when the failure
      is not specific to a sink
    """
    __tablename__ = "migration_error_log"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    source_table = Column(String(255), nullable=False)
    target_table = Column(String(1024), nullable=False)
    source_primary_key = Column(String(255), nullable=True, index=True)

    failed_data = Column(Text, nullable=False)
    error_message = Column(Text, nullable=False)
    migration_step = Column(String(255), nullable=False, index=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)

    __table_args__ = (
        Index("idx_error_log_step_created", "migration_step", "created_at"),
    )
