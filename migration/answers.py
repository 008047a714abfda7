"""
Answer projection: from raw answers across sheet revisions to one answer
per slot of each composite sheet.

Scalar answers (no table row or column) are keyed by (sheet, question) and
the most recently modified candidate across all revisions wins. Tabular
answers are keyed by (sheet, question, row, column) and only candidates from
the sheet's latest revision are eligible, so rows of different historical
tables are never interleaved.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from schemas.source import AnswerRecord
from models.base import EntityType
from models.questionnaire import AnswerShareableCompany, AnswerTextChoice
from migration.identity_map import IdentityMap
from migration.revisions import RevisionResolver
from migration.values import is_placeholder
from migration.writer import LinkRows
from core.exceptions import FKUnresolved
import logging

logger = logging.getLogger(__name__)

ANSWER_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "questionnaire-migration/answers")

DedupKey = Tuple[str, str, Optional[str], Optional[str]]


class SkipReason(str, enum.Enum):
    """Why a raw answer did not survive projection"""
    PLACEHOLDER = "placeholder"
    FK_UNRESOLVED = "fk_unresolved"
    STALE_REVISION = "stale_revision"
    SUPERSEDED = "superseded"


def primary_value(record: AnswerRecord) -> Any:
    """
    The value that decides whether an answer was given at all.

    A selected choice always counts; otherwise the first of text, text-area,
    number, boolean, date and file that is not a placeholder, so a filler
    text such as "0" or "-" does not hide a real typed value.
    """
    if record.choice:
        return record.choice
    for value in (record.text, record.text_area, record.number, record.boolean, record.date, record.file):
        if not is_placeholder(value):
            return value
    return None


def dedup_key_string(key: DedupKey) -> str:
    sheet_id, question_id, row_ref, column_id = key
    return f"{sheet_id}|{question_id}|{row_ref or ''}|{column_id or ''}"


def answer_id_for(key: DedupKey) -> str:
    """Stable internal id for a dedup slot, identical across re-runs"""
    return str(uuid.uuid5(ANSWER_NAMESPACE, dedup_key_string(key)))


@dataclass(frozen=True)
class AnswerCandidate:
    sheet_id: str
    question_id: str
    row_ref: Optional[str]
    column_id: Optional[str]
    choice_id: Optional[str]
    modified_at: datetime
    source_revision_id: str
    record: AnswerRecord = field(compare=False, repr=False)

    @property
    def is_tabular(self) -> bool:
        return self.row_ref is not None or self.column_id is not None

    @property
    def key(self) -> DedupKey:
        if self.is_tabular:
            return (self.sheet_id, self.question_id, self.row_ref, self.column_id)
        return (self.sheet_id, self.question_id, None, None)

    @property
    def external_id(self) -> str:
        return self.record.external_id

    def outranks(self, other: "AnswerCandidate") -> bool:
        """Later modifiedAt wins; the greater external id breaks ties"""
        return (self.modified_at, self.external_id) > (other.modified_at, other.external_id)


@dataclass
class ProjectionStats:
    offered: int = 0
    retained: int = 0
    placeholder: int = 0
    fk_unresolved: int = 0
    stale_revision: int = 0
    superseded: int = 0

    def count(self, reason: SkipReason) -> None:
        setattr(self, reason.value, getattr(self, reason.value) + 1)

    def as_dict(self) -> Dict[str, int]:
        return {
            "offered": self.offered,
            "retained": self.retained,
            "placeholder": self.placeholder,
            "fk_unresolved": self.fk_unresolved,
            "stale_revision": self.stale_revision,
            "superseded": self.superseded,
        }


class AnswerProjector:
    """
    Collect answer candidates and keep one per dedup key.

    Offering candidates is order-independent: keeping the candidate that
    outranks the other is commutative and associative, so the retained set
    depends only on the set of records offered.
    """

    def __init__(self, identity_map: IdentityMap, resolver: RevisionResolver):
        self.identity_map = identity_map
        self.resolver = resolver
        self.stats = ProjectionStats()
        self._retained: Dict[DedupKey, AnswerCandidate] = {}

    async def candidate_for(self, record: AnswerRecord) -> AnswerCandidate:
        """
        Resolve the foreign keys of one raw answer.

        Raises:
            FKUnresolved: Sheet or question missing, or a referenced choice
                or list-table column that has no mapping
        """
        refs = await self.identity_map.resolve({
            "sheet": (record.sheet, EntityType.SHEET),
            "question": (record.question, EntityType.QUESTION),
            "choice": (record.choice, EntityType.CHOICE),
            "column": (record.column, EntityType.LIST_TABLE_COLUMN),
        })

        required = {"sheet": record.sheet, "question": record.question}
        optional = {"choice": record.choice, "column": record.column}
        for name, referenced_id in list(required.items()) + list(optional.items()):
            must_resolve = name in required or referenced_id is not None
            if must_resolve and refs[name] is None:
                raise FKUnresolved(
                    f"Answer {name} not migrated",
                    context={
                        "entity_type": EntityType.ANSWER.value,
                        "external_id": record.external_id,
                        "reference": name,
                        "referenced_id": referenced_id
                    }
                )

        return AnswerCandidate(
            sheet_id=refs["sheet"],
            question_id=refs["question"],
            row_ref=record.row,
            column_id=refs["column"],
            choice_id=refs["choice"],
            modified_at=record.effective_modified_at,
            source_revision_id=record.sheet,
            record=record,
        )

    async def offer(self, record: AnswerRecord) -> Optional[SkipReason]:
        """
        Project one raw answer.

        Returns:
            None when the candidate is currently retained, otherwise the
            reason it was dropped
        """
        self.stats.offered += 1

        if is_placeholder(primary_value(record)):
            self.stats.count(SkipReason.PLACEHOLDER)
            return SkipReason.PLACEHOLDER

        try:
            candidate = await self.candidate_for(record)
        except FKUnresolved as e:
            self.stats.count(SkipReason.FK_UNRESOLVED)
            logger.debug(str(e))
            return SkipReason.FK_UNRESOLVED

        if candidate.is_tabular:
            latest = self.resolver.latest_external_id_for(candidate.sheet_id)
            if latest is None or candidate.source_revision_id != latest:
                self.stats.count(SkipReason.STALE_REVISION)
                return SkipReason.STALE_REVISION

        return self.keep(candidate)

    def keep(self, candidate: AnswerCandidate) -> Optional[SkipReason]:
        """Retain the candidate if it outranks the current holder of its key"""
        current = self._retained.get(candidate.key)
        if current is None:
            self._retained[candidate.key] = candidate
            return None

        self.stats.count(SkipReason.SUPERSEDED)
        if candidate.outranks(current):
            self._retained[candidate.key] = candidate
            return None
        return SkipReason.SUPERSEDED

    def retained(self) -> List[AnswerCandidate]:
        """Surviving candidates, ordered by dedup key"""
        candidates = sorted(self._retained.values(), key=lambda c: dedup_key_string(c.key))
        self.stats.retained = len(candidates)
        return candidates

    async def build_row(self, candidate: AnswerCandidate) -> Dict[str, Any]:
        """Target `answers` row for a retained candidate"""
        record = candidate.record
        refs = await self.identity_map.resolve({
            "company_id": (record.company, EntityType.COMPANY),
            "created_by": (record.created_by, EntityType.USER),
        })

        text_value = record.text if record.text and record.text.strip() else record.text_area
        return {
            "id": answer_id_for(candidate.key),
            "external_id": record.external_id,
            "dedup_key": dedup_key_string(candidate.key),
            "sheet_id": candidate.sheet_id,
            "question_id": candidate.question_id,
            "choice_id": candidate.choice_id,
            "list_table_row_ref": candidate.row_ref,
            "list_table_column_id": candidate.column_id,
            "company_id": refs["company_id"],
            "created_by": refs["created_by"],
            "source_revision_external_id": candidate.source_revision_id,
            "text_value": text_value,
            "number_value": record.number,
            "boolean_value": record.boolean,
            "date_value": record.date,
            "file_url": record.file,
            "clarification": record.clarification,
            "created_at": record.created_at,
            "modified_at": record.modified_at,
        }

    async def build_links(self, candidate: AnswerCandidate) -> List[LinkRows]:
        """
        Shareable companies and text choices of a retained candidate.

        Both replace what the slot held before, so a re-run that changes the
        winning answer leaves no rows of the previous one behind.
        """
        record = candidate.record
        company_ids = await self.identity_map.get_batch(record.shareable_with, EntityType.COMPANY)
        shareable = [{"company_id": company_id} for company_id in dict.fromkeys(c for c in company_ids if c)]
        choices = [
            {"text_choice": text_choice, "order_number": index}
            for index, text_choice in enumerate(record.text_choices)
        ]
        return [
            LinkRows(AnswerShareableCompany.__table__, "answer_id", shareable, replace=True),
            LinkRows(AnswerTextChoice.__table__, "answer_id", choices, replace=True),
        ]
