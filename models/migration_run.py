from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Float, Boolean, Text, Index
from datetime import datetime, timezone
import uuid
from models.base import Base, JSONType, MigrationMode, RunStatus


def _utcnow():
    return datetime.now(timezone.utc)


class MigrationRun(Base):
    """
    Tracks metadata for each migration execution.

    Purpose:
    - Audit trail of all runs (mode, selected stages, outcome)
    - Per-stage counters for the status API
    - Error tracking for fatal stages
    """
    __tablename__ = "migration_runs"

    # SQLite only autoincrements INTEGER primary keys
    id = Column(BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)

    # Run configuration
    mode = Column(Enum(MigrationMode), nullable=False)
    dry_run = Column(Boolean, nullable=False, default=False)
    record_limit = Column(Integer, nullable=True)

    # Run metadata
    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Totals across stages
    records_migrated = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    # Per-stage results keyed by stage name
    stages = Column(JSONType, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_migration_run_status", "status", "started_at"),
    )
