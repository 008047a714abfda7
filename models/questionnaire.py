"""
Target tables for the migrated questionnaire dataset.

Every entity table carries the internal `id` (UUID string, minted by the
migration) and the `external_id` of the source record it came from. Sheets
are composite: `external_id` holds the latest revision, and every revision
id is listed in `revision_external_ids` and mapped in `migration_id_map`.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, Text,
    Boolean, Float, Index, ForeignKey
)
from datetime import datetime, timezone
from models.base import Base, JSONType


def _utcnow():
    return datetime.now(timezone.utc)


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    name = Column(String(500), nullable=False)
    email_suffix = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    email = Column(String(320), nullable=True, index=True)
    first_name = Column(String(200), nullable=True)
    last_name = Column(String(200), nullable=True)
    full_name = Column(String(400), nullable=True)
    user_type = Column(String(100), nullable=True)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Section(Base):
    __tablename__ = "sections"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    name = Column(String(500), nullable=False)
    order_number = Column(Integer, nullable=True)
    help_text = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Subsection(Base):
    __tablename__ = "subsections"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    section_id = Column(String(36), ForeignKey("sections.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(500), nullable=False)
    order_number = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Question(Base):
    __tablename__ = "questions"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    section_id = Column(String(36), ForeignKey("sections.id", ondelete="SET NULL"), nullable=True, index=True)
    subsection_id = Column(String(36), ForeignKey("subsections.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(500), nullable=True)
    content = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    response_type = Column(String(100), nullable=True)
    order_number = Column(Integer, nullable=True)
    required = Column(Boolean, nullable=False, default=False)
    section_sort_number = Column(Integer, nullable=True)
    subsection_sort_number = Column(Integer, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class QuestionTag(Base):
    __tablename__ = "question_tags"

    question_id = Column(String(36), ForeignKey("questions.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class Choice(Base):
    __tablename__ = "choices"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id", ondelete="CASCADE"), nullable=True, index=True)
    content = Column(Text, nullable=True)
    order_number = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ListTableColumn(Base):
    __tablename__ = "list_table_columns"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(500), nullable=False)
    order_number = Column(Integer, nullable=True)
    response_type = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Sheet(Base):
    """
    Composite questionnaire sheet.

    One row per (normalized name, owner company) group of source revisions.
    """
    __tablename__ = "sheets"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)  # latest revision
    revision_external_ids = Column(JSONType, nullable=False)
    version_count = Column(Integer, nullable=False, default=1)
    name = Column(String(500), nullable=False)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_to_company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    requesting_company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(100), nullable=False, default="draft")
    version = Column(Integer, nullable=True)  # highest Version across revisions
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SheetTag(Base):
    __tablename__ = "sheet_tags"

    sheet_id = Column(String(36), ForeignKey("sheets.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class Answer(Base):
    """
    Projected answer, at most one per dedup slot of a composite sheet.

    `dedup_key` is `sheet|question|row|column` (row and column empty for
    scalar answers) and makes re-runs upsert the same slot.
    """
    __tablename__ = "answers"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    dedup_key = Column(String(200), unique=True, nullable=False)
    sheet_id = Column(String(36), ForeignKey("sheets.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(String(36), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    choice_id = Column(String(36), ForeignKey("choices.id", ondelete="SET NULL"), nullable=True)
    list_table_row_ref = Column(String(64), nullable=True)
    list_table_column_id = Column(String(36), ForeignKey("list_table_columns.id", ondelete="SET NULL"), nullable=True)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    source_revision_external_id = Column(String(64), nullable=False)
    text_value = Column(Text, nullable=True)
    number_value = Column(Float, nullable=True)
    boolean_value = Column(Boolean, nullable=True)
    date_value = Column(DateTime(timezone=True), nullable=True)
    file_url = Column(Text, nullable=True)
    clarification = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_answers_sheet_question", "sheet_id", "question_id"),
    )


class AnswerShareableCompany(Base):
    __tablename__ = "answer_shareable_companies"

    answer_id = Column(String(36), ForeignKey("answers.id", ondelete="CASCADE"), primary_key=True)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True)


class AnswerTextChoice(Base):
    __tablename__ = "answer_text_choices"

    answer_id = Column(String(36), ForeignKey("answers.id", ondelete="CASCADE"), primary_key=True)
    order_number = Column(Integer, primary_key=True)
    text_choice = Column(Text, nullable=False)


class Request(Base):
    """A company's request for a supplier to fill in a sheet"""
    __tablename__ = "requests"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    product_name = Column(String(500), nullable=True)
    requestor_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    requesting_from_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    sheet_id = Column(String(36), ForeignKey("sheets.id", ondelete="SET NULL"), nullable=True, index=True)
    processed = Column(Boolean, nullable=False, default=False)
    manufacturer_marked_as_provided = Column(Boolean, nullable=False, default=False)
    show_as_removed = Column(Boolean, nullable=False, default=False)
    comment_requestor = Column(Text, nullable=True)
    comment_supplier = Column(Text, nullable=True)
    creator_email = Column(String(320), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RequestTag(Base):
    __tablename__ = "request_tags"

    request_id = Column(String(36), ForeignKey("requests.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class SheetStatus(Base):
    """Per-company workflow status of a sheet version"""
    __tablename__ = "sheet_statuses"

    id = Column(String(36), primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False)
    sheet_name = Column(String(500), nullable=True)
    sheet_id = Column(String(36), ForeignKey("sheets.id", ondelete="SET NULL"), nullable=True, index=True)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    supplier_id = Column(String(36), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    father_of_sheet_id = Column(String(36), ForeignKey("sheets.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(100), nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    complete_text = Column(Text, nullable=True)
    observations = Column(Text, nullable=True)
    version = Column(Integer, nullable=True)
    reminders_count = Column(Integer, nullable=False, default=0)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    migrated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
