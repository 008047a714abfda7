from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Entity types tracked in the identity map"""
    COMPANY = "company"
    USER = "user"
    SECTION = "section"
    SUBSECTION = "subsection"
    TAG = "tag"
    QUESTION = "question"
    CHOICE = "choice"
    LIST_TABLE_COLUMN = "list_table_column"
    SHEET = "sheet"
    ANSWER = "answer"
    REQUEST = "request"
    SHEET_STATUS = "sheet_status"


class MigrationMode(str, enum.Enum):
    """Write strategy for a run"""
    FRESH = "fresh"
    INCREMENTAL = "incremental"


class RunStatus(str, enum.Enum):
    """Migration run status"""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class StageStatus(str, enum.Enum):
    """Outcome of one entity-type stage"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
