"""
Map spreadsheet-importer answers onto migrated questions.

The importer hands over `(external question id, value, auxiliary values)`
tuples. They go through the same placeholder filter and value typing as the
bulk answer migration, so both paths agree on what an answer is.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from models.base import EntityType
from migration.identity_map import IdentityMap
from migration.store import TargetStore
from migration.values import TypedValue, ValueKind, is_placeholder, render_value, type_value
import logging

logger = logging.getLogger(__name__)


class IssueType(str, enum.Enum):
    CHOICE_MISMATCH = "choice_mismatch"
    MISSING_REQUIRED = "missing_required"
    NO_QUESTION_MATCH = "no_question_match"


@dataclass
class SpreadsheetAnswer:
    external_question_id: str
    value: Any
    auxiliary_values: List[str] = field(default_factory=list)


@dataclass
class ImportIssue:
    type: IssueType
    external_question_id: str
    value: Optional[str]
    details: str
    question: Optional[str] = None
    suggested_fix: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "external_question_id": self.external_question_id,
            "question": self.question,
            "value": self.value,
            "details": self.details,
            "suggested_fix": self.suggested_fix,
        }


@dataclass
class MappedAnswer:
    """One spreadsheet answer resolved to a question; typed is None for placeholders"""
    external_question_id: str
    question_id: str
    required: bool
    raw_value: Optional[str]
    typed: Optional[TypedValue] = None
    issue: Optional[ImportIssue] = None

    @property
    def is_answered(self) -> bool:
        return self.typed is not None


@dataclass
class ImportPreview:
    total: int = 0
    answers: List[MappedAnswer] = field(default_factory=list)
    issues: List[ImportIssue] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.answers)

    @property
    def answered(self) -> int:
        return sum(1 for answer in self.answers if answer.is_answered)

    @property
    def ready_to_import(self) -> bool:
        """Unmatched questions are tolerated; every other issue blocks the import"""
        return all(issue.type == IssueType.NO_QUESTION_MATCH for issue in self.issues)


async def map_spreadsheet_answers(
    rows: Sequence[SpreadsheetAnswer],
    identity_map: IdentityMap,
    store: TargetStore
) -> ImportPreview:
    """
    Resolve and type spreadsheet answers.

    Args:
        rows: Importer tuples
        identity_map: Resolves external question ids to migrated questions
        store: Source of question response types, required flags and choices

    Returns:
        ImportPreview with one MappedAnswer per matched question and the
        issues found along the way
    """
    preview = ImportPreview(total=len(rows))

    question_ids = await identity_map.get_batch([row.external_question_id for row in rows], EntityType.QUESTION)
    questions = await store.fetch_questions([q for q in question_ids if q])

    for row, question_id in zip(rows, question_ids):
        raw_value = render_value(row.value)
        question = questions.get(question_id) if question_id else None

        if question is None:
            if not is_placeholder(row.value):
                preview.issues.append(ImportIssue(
                    type=IssueType.NO_QUESTION_MATCH,
                    external_question_id=row.external_question_id,
                    value=raw_value,
                    details="Question not found in the target (may be deprecated)"
                ))
            continue

        mapped = MappedAnswer(
            external_question_id=row.external_question_id,
            question_id=question_id,
            required=question["required"],
            raw_value=raw_value
        )
        preview.answers.append(mapped)

        if is_placeholder(row.value):
            if question["required"]:
                mapped.issue = ImportIssue(
                    type=IssueType.MISSING_REQUIRED,
                    external_question_id=row.external_question_id,
                    value=raw_value,
                    question=question["content"],
                    details="Required question has no answer"
                )
                preview.issues.append(mapped.issue)
            continue

        choices = question["choices"]
        mapped.typed = type_value(raw_value, question["response_type"], choices, row.auxiliary_values)
        if mapped.typed.kind == ValueKind.CHOICE and mapped.typed.issue:
            mapped.issue = ImportIssue(
                type=IssueType.CHOICE_MISMATCH,
                external_question_id=row.external_question_id,
                value=raw_value,
                question=question["content"],
                details=mapped.typed.issue,
                suggested_fix=choices[0].get("content") if choices else None
            )
            preview.issues.append(mapped.issue)

    logger.info(
        f"Spreadsheet mapping: {preview.matched}/{preview.total} matched, "
        f"{preview.answered} answered, {len(preview.issues)} issues"
    )
    return preview
