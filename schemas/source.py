"""
Pydantic schemas for source API records, applied at the ingestion boundary.

Each entity type has one schema. Raw field bags are parsed into these models
as soon as they leave the paginator; a record that does not parse is
rejected and never reaches the transformers.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Type, TypeVar
from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

R = TypeVar("R", bound="SourceRecord")


def _clean_id_list(v):
    """Ensure reference lists are lists of non-empty strings"""
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if isinstance(v, list):
        return [str(item).strip() for item in v if item is not None and str(item).strip()]
    return []


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class SourceRecord(BaseModel):
    """
    Fields shared by every source record.

    Ensures:
    - The external id is present and non-empty
    - Timestamps are timezone-aware (UTC when the source omits the offset)
    """

    external_id: str = Field(..., alias="_id", min_length=1, max_length=64)
    created_at: Optional[datetime] = Field(None, alias="Created Date")
    modified_at: Optional[datetime] = Field(None, alias="Modified Date")
    created_by: Optional[str] = Field(None, alias="Created By")

    @validator("external_id", pre=True)
    def clean_external_id(cls, v):
        if v is None:
            raise ValueError("record has no _id")
        v = str(v).strip()
        if not v:
            raise ValueError("record has an empty _id")
        return v

    @validator("created_at", "modified_at", pre=True)
    def blank_timestamp(cls, v):
        return _blank_to_none(v)

    @validator("created_at", "modified_at")
    def ensure_aware(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @validator("created_by", pre=True)
    def blank_reference(cls, v):
        return _blank_to_none(v)

    @property
    def effective_modified_at(self) -> datetime:
        """Modified date, falling back to the created date, then the epoch"""
        return self.modified_at or self.created_at or EPOCH

    class Config:
        populate_by_name = True
        extra = "ignore"


class CompanyRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    email_suffix: Optional[str] = Field(None, alias="EmailSuffix")
    active: Optional[bool] = Field(None, alias="Active")


class UserRecord(SourceRecord):
    authentication: Optional[Dict[str, Any]] = None
    plain_email: Optional[str] = Field(None, alias="email")
    first_name: Optional[str] = Field(None, alias="First name")
    last_name: Optional[str] = Field(None, alias="Last name")
    full_name: Optional[str] = Field(None, alias="Full Name")
    user_type: Optional[str] = Field(None, alias="user-type")
    company: Optional[str] = Field(None, alias="Company")

    @validator("company", pre=True)
    def blank_company(cls, v):
        return _blank_to_none(v)

    @property
    def email(self) -> Optional[str]:
        """Login email, stored under authentication.email.email by the source"""
        auth_email = (self.authentication or {}).get("email")
        if isinstance(auth_email, dict) and auth_email.get("email"):
            return str(auth_email["email"]).strip().lower()
        if self.plain_email:
            return self.plain_email.strip().lower()
        return None


class SectionRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    order: Optional[float] = Field(None, alias="Order")
    help_text: Optional[str] = Field(None, alias="Help")


class SubsectionRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    order: Optional[float] = Field(None, alias="Order")
    section: Optional[str] = Field(None, alias="Section")


class TagRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    description: Optional[str] = Field(None, alias="Description")


class QuestionRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    content: Optional[str] = Field(None, alias="Content")
    description: Optional[str] = Field(None, alias="Question Description")
    response_type: Optional[str] = Field(None, alias="Type")
    order: Optional[float] = Field(None, alias="Order")
    required: Optional[bool] = Field(None, alias="Required")
    section_sort_number: Optional[float] = Field(None, alias="SECTION SORT NUMBER")
    subsection_sort_number: Optional[float] = Field(None, alias="SUBSECTION SORT NUMBER")
    parent_section: Optional[str] = Field(None, alias="Parent Section")
    parent_subsection: Optional[str] = Field(None, alias="Parent Subsection")
    tags: List[str] = Field(default_factory=list, alias="Tags")

    @validator("tags", pre=True)
    def clean_tags(cls, v):
        return _clean_id_list(v)


class ChoiceRecord(SourceRecord):
    content: Optional[str] = Field(None, alias="Content")
    order: Optional[float] = Field(None, alias="Order")
    parent_question: Optional[str] = Field(None, alias="Parent Question")


class ListTableColumnRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    order: Optional[float] = Field(None, alias="Order")
    response_type: Optional[str] = Field(None, alias="Response type")
    parent_question: Optional[str] = Field(None, alias="Parent Question")


class SheetRecord(SourceRecord):
    name: Optional[str] = Field(None, alias="Name")
    company: Optional[str] = Field(None, alias="Company")
    assigned_to: Optional[str] = Field(None, alias="Sup Assigned to")
    original_requestor: Optional[str] = Field(None, alias="Original Requestor assoc")
    status: Optional[str] = Field(None, alias="New Status")
    version: Optional[float] = Field(None, alias="Version")
    tags: List[str] = Field(default_factory=list, alias="tags")

    @validator("company", "assigned_to", "original_requestor", pre=True)
    def blank_companies(cls, v):
        return _blank_to_none(v)

    @validator("tags", pre=True)
    def clean_tags(cls, v):
        return _clean_id_list(v)

    @property
    def owner_company(self) -> Optional[str]:
        """Owning company, falling back to the assigned supplier"""
        return self.company or self.assigned_to


class AnswerRecord(SourceRecord):
    sheet: Optional[str] = Field(None, alias="Sheet")
    question: Optional[str] = Field(None, alias="Parent Question")
    choice: Optional[str] = Field(None, alias="Choice")
    row: Optional[str] = Field(None, alias="List Table Row")
    column: Optional[str] = Field(None, alias="List Table Column")
    company: Optional[str] = Field(None, alias="Company")
    text: Optional[str] = None
    text_area: Optional[str] = Field(None, alias="text-area")
    number: Optional[float] = Field(None, alias="Number")
    boolean: Optional[bool] = Field(None, alias="Boolean")
    date: Optional[datetime] = Field(None, alias="Date")
    file: Optional[str] = Field(None, alias="File")
    clarification: Optional[str] = Field(None, alias="Clarification")
    shareable_with: List[str] = Field(default_factory=list, alias="Shareable with")
    text_choices: List[str] = Field(default_factory=list, alias="List of Text Choices")

    @validator("sheet", "question", "choice", "row", "column", "company", "date", pre=True)
    def blank_references(cls, v):
        return _blank_to_none(v)

    @validator("shareable_with", pre=True)
    def clean_shareable(cls, v):
        return _clean_id_list(v)

    @validator("text_choices", pre=True)
    def clean_text_choices(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(item) for item in v if item is not None and str(item).strip()]

    @validator("number", pre=True)
    def blank_number(cls, v):
        return _blank_to_none(v)

    @validator("date")
    def date_aware(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_tabular(self) -> bool:
        return self.row is not None or self.column is not None


class RequestRecord(SourceRecord):
    product_name: Optional[str] = Field(None, alias="Product name")
    requesting_company: Optional[str] = Field(None, alias="Requesting company")
    supplier: Optional[str] = Field(None, alias="Supplier ")
    sheet: Optional[str] = Field(None, alias="Sheet")
    processed: Optional[bool] = Field(None, alias="Processed")
    manufacturer_marked_as_provided: Optional[bool] = Field(None, alias="Manufacturer Marked as Provided")
    show_as_removed: Optional[bool] = Field(None, alias="show as removed")
    comment_requestor: Optional[str] = Field(None, alias="Comment Requestor")
    comment_supplier: Optional[str] = Field(None, alias="Comment Supplier")
    creator_email: Optional[str] = Field(None, alias="Creator Email")
    tags: List[str] = Field(default_factory=list, alias="tags")

    @validator("requesting_company", "supplier", "sheet", pre=True)
    def blank_references(cls, v):
        return _blank_to_none(v)

    @validator("tags", pre=True)
    def clean_tags(cls, v):
        return _clean_id_list(v)


class SheetStatusRecord(SourceRecord):
    sheet_name: Optional[str] = Field(None, alias="Sheet Name")
    sheet: Optional[str] = Field(None, alias="Sheet")
    company: Optional[str] = Field(None, alias="Company")
    supplier: Optional[str] = Field(None, alias="Supplier")
    father_of_sheet: Optional[str] = Field(None, alias="Father of Sheet")
    status: Optional[str] = Field(None, alias="Status")
    completed: Optional[bool] = Field(None, alias="Completed")
    complete_text: Optional[str] = Field(None, alias="Complete Text")
    observations: Optional[str] = Field(None, alias="Observations")
    version: Optional[float] = Field(None, alias="Version")
    reminders_count: Optional[float] = Field(None, alias="Reminders count")

    @validator("sheet", "company", "supplier", "father_of_sheet", pre=True)
    def blank_references(cls, v):
        return _blank_to_none(v)


def parse_record(schema: Type[R], raw: Dict[str, Any]) -> R:
    """Parse one raw record or raise pydantic's ValidationError"""
    return schema.model_validate(raw)
