"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (EntityType, MigrationMode, RunStatus, StageStatus)
    questionnaire: Target tables for companies, users, sections, subsections, tags,
        questions, choices, list-table columns, sheets, answers, requests,
        sheet statuses and their link tables
    mapping: External-to-internal identifier map
    migration_run: Migration execution tracking and per-stage metrics

Usage:
    from models import Base, Company, Sheet, Answer, IdMapping, MigrationRun
    from models.base import EntityType, MigrationMode

Relationships:
    - users, sheets, answers → companies
    - subsections → sections; questions → sections, subsections
    - choices, list_table_columns → questions
    - answers → sheets, questions, choices, list_table_columns
    - answer_shareable_companies, answer_text_choices → answers
    - requests, sheet_statuses → sheets, companies
"""

from models.base import Base, EntityType, MigrationMode, RunStatus, StageStatus
from models.questionnaire import (
    Company,
    User,
    Section,
    Subsection,
    Tag,
    Question,
    QuestionTag,
    Choice,
    ListTableColumn,
    Sheet,
    SheetTag,
    Answer,
    AnswerShareableCompany,
    AnswerTextChoice,
    Request,
    RequestTag,
    SheetStatus,
)
from models.mapping import IdMapping
from models.migration_run import MigrationRun

__all__ = [
    "Base",
    "EntityType",
    "MigrationMode",
    "RunStatus",
    "StageStatus",
    "Company",
    "User",
    "Section",
    "Subsection",
    "Tag",
    "Question",
    "QuestionTag",
    "Choice",
    "ListTableColumn",
    "Sheet",
    "SheetTag",
    "Answer",
    "AnswerShareableCompany",
    "AnswerTextChoice",
    "Request",
    "RequestTag",
    "SheetStatus",
    "IdMapping",
    "MigrationRun",
]
