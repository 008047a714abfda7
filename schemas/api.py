"""
Pydantic schemas for status API responses
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from models.base import MigrationMode, RunStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Migration Run Schemas
# ============================================================================

class RunSummary(BaseModel):
    """One migration run, without per-stage detail"""
    run_id: str
    mode: MigrationMode
    dry_run: bool
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_migrated: int = 0
    records_skipped: int = 0
    records_failed: int = 0

    class Config:
        from_attributes = True
        use_enum_values = True


class RunDetail(RunSummary):
    """One migration run with per-stage results"""
    record_limit: Optional[int] = None
    stages: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "run_id": "5f1c2a1e-8d7e-4a4b-9a43-0d6f3f7b8e21",
                "mode": "fresh",
                "dry_run": False,
                "status": "partial",
                "started_at": "2024-01-15T10:00:00Z",
                "completed_at": "2024-01-15T10:42:00Z",
                "duration_seconds": 2520.4,
                "records_migrated": 118204,
                "records_skipped": 20311,
                "records_failed": 1,
                "stages": {
                    "answers": {
                        "status": "success",
                        "migrated": 96112,
                        "skipped": 20011,
                        "failed": 1,
                        "projection": {"placeholder": 18233, "superseded": 1402}
                    }
                },
                "error_message": None
            }
        }


class RunListResponse(BaseModel):
    runs: List[RunSummary]
    total: int
    request_id: str


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=_utcnow)
    database_connected: bool
    last_run: Optional[RunSummary] = None

    @staticmethod
    def determine_status(database_connected: bool, last_run_status: Optional[str]) -> str:
        """Unhealthy without a database; degraded when the last run did not fully succeed"""
        if not database_connected:
            return "unhealthy"
        if last_run_status in (RunStatus.FAILED.value, RunStatus.PARTIAL.value):
            return "degraded"
        return "healthy"


# ============================================================================
# Mapping Statistics Schemas
# ============================================================================

class MappingStatsResponse(BaseModel):
    """Identity map entries and target rows per entity type"""
    timestamp: datetime = Field(default_factory=_utcnow)
    mappings: Dict[str, int]
    rows: Dict[str, int]
    total_mappings: int
    request_id: str

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "mappings": {"company": 412, "sheet": 3310},
                "rows": {"companies": 412, "sheets": 2204},
                "total_mappings": 3722,
                "request_id": "req_4c1f9e0a2b7d"
            }
        }


class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None
