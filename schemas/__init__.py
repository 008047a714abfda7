"""
Pydantic schemas for data validation and serialization.

Schemas:
    source: Source API records, one model per entity type, parsed at the
        boundary (aliases for the legacy field names, tz-aware timestamps,
        blank references to None)
    api: Status API response models

Usage:
    from schemas.source import AnswerRecord, parse_record
    from schemas.api import RunDetail, HealthCheckResponse

Example:
    record = parse_record(AnswerRecord, {
        "_id": "a1",
        "Sheet": "sheet-r2",
        "Parent Question": "q1",
        "text": "Yes",
        "Modified Date": "2024-01-15T10:00:00Z"
    })
    assert record.sheet == "sheet-r2"
    assert record.modified_at.tzinfo is not None

Validation:
    A record that fails validation raises pydantic's ValidationError; the
    orchestrator counts it as a failed row and the stage carries on.
"""

__all__ = [
    "SourceRecord",
    "AnswerRecord",
    "SheetRecord",
    "parse_record",
    "RunSummary",
    "RunDetail",
    "HealthCheckResponse",
    "MappingStatsResponse",
]
