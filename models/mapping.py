from sqlalchemy import Column, String, DateTime, Index
from datetime import datetime, timezone
from models.base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class IdMapping(Base):
    """
    Translation of external record identifiers to internal identifiers.

    Purpose:
    - Foreign-key resolution for every stage after the first
    - Idempotent re-runs (a mapped record is already migrated)
    - Composite sheets: several external ids share one internal id

    The table persists across runs; fresh mode deletes one entity type's
    slice before reloading it.
    """
    __tablename__ = "migration_id_map"

    entity_type = Column(String(50), primary_key=True)
    external_id = Column(String(64), primary_key=True)
    internal_id = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_id_map_internal", "entity_type", "internal_id"),
    )
