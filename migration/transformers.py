"""
Transform parsed source records into target rows.
"""

import uuid
from typing import Any, Dict, List, Optional
from models.base import EntityType
from models.questionnaire import QuestionTag, RequestTag, SheetTag
from schemas.source import (
    SourceRecord,
    CompanyRecord,
    UserRecord,
    SectionRecord,
    SubsectionRecord,
    TagRecord,
    QuestionRecord,
    ChoiceRecord,
    ListTableColumnRecord,
    RequestRecord,
    SheetStatusRecord,
)
from migration.identity_map import IdentityMap
from migration.revisions import CompositeSheet
from migration.writer import LinkRows, PendingRow
from core.exceptions import RowTransformError
import logging

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


class RecordTransformer:
    """
    Map parsed records to target rows, resolving foreign keys.

    Handles:
    - Internal id minting
    - Foreign-key resolution through the identity map (lookups per record run concurrently)
    - Defaults for missing names
    - Rounding of sort orders

    Optional references that are not migrated become NULL; the record is
    still written.
    """

    def __init__(self, identity_map: IdentityMap):
        self.identity_map = identity_map

    async def transform(self, entity_type: EntityType, record: SourceRecord) -> PendingRow:
        handlers = {
            EntityType.COMPANY: self._transform_company,
            EntityType.USER: self._transform_user,
            EntityType.SECTION: self._transform_section,
            EntityType.SUBSECTION: self._transform_subsection,
            EntityType.TAG: self._transform_tag,
            EntityType.QUESTION: self._transform_question,
            EntityType.CHOICE: self._transform_choice,
            EntityType.LIST_TABLE_COLUMN: self._transform_list_table_column,
            EntityType.REQUEST: self._transform_request,
            EntityType.SHEET_STATUS: self._transform_sheet_status,
        }
        handler = handlers.get(entity_type)
        if handler is None:
            raise ValueError(f"No record transform for {entity_type}")

        try:
            return await handler(record)
        except (TypeError, ValueError, OverflowError) as e:
            raise RowTransformError(
                f"Failed to transform {entity_type.value} record",
                context={"entity_type": entity_type.value, "external_id": record.external_id},
                original_exception=e
            )

    @staticmethod
    def _pending(record: SourceRecord, row: Dict[str, Any], links: Optional[List[LinkRows]] = None) -> PendingRow:
        return PendingRow(row=row, external_ids=[record.external_id], links=links or [])

    def _base_row(self, record: SourceRecord) -> Dict[str, Any]:
        return {
            "id": new_id(),
            "external_id": record.external_id,
            "created_at": record.created_at,
            "modified_at": record.modified_at,
        }

    async def _resolve_optional(self, record: SourceRecord, references) -> Dict[str, Optional[str]]:
        resolved = await self.identity_map.resolve(references)
        for name, internal_id in resolved.items():
            external_id = references[name][0]
            if external_id and internal_id is None:
                logger.debug(
                    f"{record.external_id}: {name} {external_id} not migrated, storing NULL"
                )
        return resolved

    async def _transform_company(self, record: CompanyRecord) -> PendingRow:
        return self._pending(record, {
            **self._base_row(record),
            "name": self._text(record.name) or "Unknown Company",
            "email_suffix": self._text(record.email_suffix),
            "active": True if record.active is None else record.active,
        })

    async def _transform_user(self, record: UserRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"company_id": (record.company, EntityType.COMPANY)})
        first_name = self._text(record.first_name)
        last_name = self._text(record.last_name)
        full_name = self._text(record.full_name) or " ".join(p for p in (first_name, last_name) if p) or None
        return self._pending(record, {
            **self._base_row(record),
            "email": record.email,
            "first_name": first_name,
            "last_name": last_name,
            "full_name": full_name,
            "user_type": self._text(record.user_type),
            "company_id": refs["company_id"],
        })

    async def _transform_section(self, record: SectionRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"created_by": (record.created_by, EntityType.USER)})
        return self._pending(record, {
            **self._base_row(record),
            "name": self._text(record.name) or "Unknown Section",
            "order_number": self._order(record.order),
            "help_text": self._text(record.help_text),
            "created_by": refs["created_by"],
        })

    async def _transform_subsection(self, record: SubsectionRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"section_id": (record.section, EntityType.SECTION)})
        return self._pending(record, {
            **self._base_row(record),
            "section_id": refs["section_id"],
            "name": self._text(record.name) or "Unknown Subsection",
            "order_number": self._order(record.order),
        })

    async def _transform_tag(self, record: TagRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"created_by": (record.created_by, EntityType.USER)})
        return self._pending(record, {
            **self._base_row(record),
            "name": self._text(record.name) or "Unknown Tag",
            "description": self._text(record.description),
            "created_by": refs["created_by"],
        })

    async def _transform_question(self, record: QuestionRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {
            "section_id": (record.parent_section, EntityType.SECTION),
            "subsection_id": (record.parent_subsection, EntityType.SUBSECTION),
            "created_by": (record.created_by, EntityType.USER),
        })
        tag_ids = await self.identity_map.get_batch(record.tags, EntityType.TAG)
        links = [{"tag_id": tag_id} for tag_id in dict.fromkeys(t for t in tag_ids if t)]
        question_tags = [LinkRows(QuestionTag.__table__, "question_id", links)] if links else []

        return self._pending(record, {
            **self._base_row(record),
            "section_id": refs["section_id"],
            "subsection_id": refs["subsection_id"],
            "name": self._text(record.name),
            "content": self._text(record.content),
            "description": self._text(record.description),
            "response_type": self._text(record.response_type),
            "order_number": self._order(record.order),
            "required": bool(record.required),
            "section_sort_number": self._order(record.section_sort_number),
            "subsection_sort_number": self._order(record.subsection_sort_number),
            "created_by": refs["created_by"],
        }, question_tags)

    async def _transform_choice(self, record: ChoiceRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"question_id": (record.parent_question, EntityType.QUESTION)})
        return self._pending(record, {
            **self._base_row(record),
            "question_id": refs["question_id"],
            "content": self._text(record.content),
            "order_number": self._order(record.order),
        })

    async def _transform_list_table_column(self, record: ListTableColumnRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {"question_id": (record.parent_question, EntityType.QUESTION)})
        return self._pending(record, {
            **self._base_row(record),
            "question_id": refs["question_id"],
            "name": self._text(record.name) or "Unknown Column",
            "order_number": self._order(record.order),
            "response_type": self._text(record.response_type),
        })

    async def _transform_request(self, record: RequestRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {
            "requestor_id": (record.requesting_company, EntityType.COMPANY),
            "requesting_from_id": (record.supplier, EntityType.COMPANY),
            "sheet_id": (record.sheet, EntityType.SHEET),
            "created_by": (record.created_by, EntityType.USER),
        })
        tag_ids = await self.identity_map.get_batch(record.tags, EntityType.TAG)
        links = [{"tag_id": tag_id} for tag_id in dict.fromkeys(t for t in tag_ids if t)]
        request_tags = [LinkRows(RequestTag.__table__, "request_id", links)] if links else []

        return self._pending(record, {
            **self._base_row(record),
            "product_name": self._text(record.product_name),
            "requestor_id": refs["requestor_id"],
            "requesting_from_id": refs["requesting_from_id"],
            "sheet_id": refs["sheet_id"],
            "processed": bool(record.processed),
            "manufacturer_marked_as_provided": bool(record.manufacturer_marked_as_provided),
            "show_as_removed": bool(record.show_as_removed),
            "comment_requestor": self._text(record.comment_requestor),
            "comment_supplier": self._text(record.comment_supplier),
            "creator_email": self._text(record.creator_email),
            "created_by": refs["created_by"],
        }, request_tags)

    async def _transform_sheet_status(self, record: SheetStatusRecord) -> PendingRow:
        refs = await self._resolve_optional(record, {
            "sheet_id": (record.sheet, EntityType.SHEET),
            "company_id": (record.company, EntityType.COMPANY),
            "supplier_id": (record.supplier, EntityType.COMPANY),
            "father_of_sheet_id": (record.father_of_sheet, EntityType.SHEET),
            "created_by": (record.created_by, EntityType.USER),
        })
        return self._pending(record, {
            **self._base_row(record),
            "sheet_name": self._text(record.sheet_name),
            "sheet_id": refs["sheet_id"],
            "company_id": refs["company_id"],
            "supplier_id": refs["supplier_id"],
            "father_of_sheet_id": refs["father_of_sheet_id"],
            "status": self._text(record.status),
            "completed": bool(record.completed),
            "complete_text": self._text(record.complete_text),
            "observations": self._text(record.observations),
            "version": self._order(record.version),
            "reminders_count": self._order(record.reminders_count) or 0,
            "created_by": refs["created_by"],
        })

    async def transform_sheet(self, composite: CompositeSheet) -> PendingRow:
        """One sheets row for a composite; every revision id maps to it"""
        latest = composite.latest
        refs = await self._resolve_optional(latest, {
            "company_id": (latest.company, EntityType.COMPANY),
            "assigned_to_company_id": (latest.assigned_to, EntityType.COMPANY),
            "requesting_company_id": (latest.original_requestor, EntityType.COMPANY),
            "created_by": (latest.created_by, EntityType.USER),
        })
        tag_ids = await self.identity_map.get_batch(composite.tag_external_ids, EntityType.TAG)
        links = [{"tag_id": tag_id} for tag_id in dict.fromkeys(t for t in tag_ids if t)]

        earliest_created = min(
            (r.created_at for r in composite.revisions if r.created_at is not None),
            default=None
        )
        row = {
            "id": composite.internal_id,
            "external_id": composite.latest_external_id,
            "revision_external_ids": composite.external_ids,
            "version_count": composite.version_count,
            "name": self._text(latest.name) or "Unnamed Sheet",
            "company_id": refs["company_id"],
            "assigned_to_company_id": refs["assigned_to_company_id"],
            "requesting_company_id": refs["requesting_company_id"],
            "status": self._text(latest.status) or "draft",
            "version": self._order(max(
                (r.version for r in composite.revisions if r.version is not None),
                default=None
            )),
            "created_by": refs["created_by"],
            "created_at": earliest_created,
            "modified_at": latest.modified_at,
        }
        return PendingRow(
            row=row,
            external_ids=composite.external_ids,
            links=[LinkRows(SheetTag.__table__, "sheet_id", links)] if links else []
        )

    @staticmethod
    def _text(value: Optional[str]) -> Optional[str]:
        """Strip strings; blanks become None"""
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @staticmethod
    def _order(value: Optional[float]) -> Optional[int]:
        if value is None:
            return None
        return int(round(value))
