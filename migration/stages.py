"""
Stage definitions in dependency order.
"""

import enum
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Type
from sqlalchemy import Table
from models.base import EntityType
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
    SheetRecord,
    AnswerRecord,
    RequestRecord,
    SheetStatusRecord,
)
from core.exceptions import ConfigurationError


class StageKind(str, enum.Enum):
    RECORDS = "records"  # one source record, one row
    SHEETS = "sheets"  # revisions merged by the RevisionResolver
    ANSWERS = "answers"  # projected by the AnswerProjector


@dataclass(frozen=True)
class StageDefinition:
    """
    One entity-type stage.

    Attributes:
        name: Stage name used on the command line
        source_entity: Entity endpoint of the source API
        depends_on: Stages whose rows this stage cannot do without
        references: Entity types resolved while transforming (preloaded)
        conflict_columns: Upsert key of the target table
        link_tables: Child link tables written with the stage's rows
    """
    name: str
    entity_type: EntityType
    source_entity: str
    schema: Type[SourceRecord]
    table: Table
    kind: StageKind = StageKind.RECORDS
    depends_on: Tuple[str, ...] = ()
    references: Tuple[EntityType, ...] = ()
    conflict_columns: Tuple[str, ...] = ("external_id",)
    link_tables: Tuple[Table, ...] = ()

    @property
    def tables(self) -> List[Table]:
        """Tables emptied by a fresh run, children first"""
        return list(self.link_tables) + [self.table]


STAGES: List[StageDefinition] = [
    StageDefinition(
        name="companies",
        entity_type=EntityType.COMPANY,
        source_entity="company",
        schema=CompanyRecord,
        table=Company.__table__,
    ),
    StageDefinition(
        name="users",
        entity_type=EntityType.USER,
        source_entity="user",
        schema=UserRecord,
        table=User.__table__,
        depends_on=("companies",),
        references=(EntityType.COMPANY,),
    ),
    StageDefinition(
        name="sections",
        entity_type=EntityType.SECTION,
        source_entity="section",
        schema=SectionRecord,
        table=Section.__table__,
        references=(EntityType.USER,),
    ),
    StageDefinition(
        name="subsections",
        entity_type=EntityType.SUBSECTION,
        source_entity="subsection",
        schema=SubsectionRecord,
        table=Subsection.__table__,
        depends_on=("sections",),
        references=(EntityType.SECTION,),
    ),
    StageDefinition(
        name="tags",
        entity_type=EntityType.TAG,
        source_entity="tag",
        schema=TagRecord,
        table=Tag.__table__,
        references=(EntityType.USER,),
    ),
    StageDefinition(
        name="questions",
        entity_type=EntityType.QUESTION,
        source_entity="question",
        schema=QuestionRecord,
        table=Question.__table__,
        depends_on=("sections", "subsections"),
        references=(EntityType.SECTION, EntityType.SUBSECTION, EntityType.USER, EntityType.TAG),
        link_tables=(QuestionTag.__table__,),
    ),
    StageDefinition(
        name="choices",
        entity_type=EntityType.CHOICE,
        source_entity="choice",
        schema=ChoiceRecord,
        table=Choice.__table__,
        depends_on=("questions",),
        references=(EntityType.QUESTION,),
    ),
    StageDefinition(
        name="list_table_columns",
        entity_type=EntityType.LIST_TABLE_COLUMN,
        source_entity="listtablecolumn",
        schema=ListTableColumnRecord,
        table=ListTableColumn.__table__,
        depends_on=("questions",),
        references=(EntityType.QUESTION,),
    ),
    StageDefinition(
        name="sheets",
        entity_type=EntityType.SHEET,
        source_entity="sheet",
        schema=SheetRecord,
        table=Sheet.__table__,
        kind=StageKind.SHEETS,
        depends_on=("companies",),
        references=(EntityType.COMPANY, EntityType.USER, EntityType.TAG),
        conflict_columns=("id",),
        link_tables=(SheetTag.__table__,),
    ),
    StageDefinition(
        name="answers",
        entity_type=EntityType.ANSWER,
        source_entity="answer",
        schema=AnswerRecord,
        table=Answer.__table__,
        kind=StageKind.ANSWERS,
        depends_on=("sheets", "questions", "choices", "list_table_columns"),
        references=(
            EntityType.SHEET,
            EntityType.QUESTION,
            EntityType.CHOICE,
            EntityType.LIST_TABLE_COLUMN,
            EntityType.COMPANY,
            EntityType.USER,
        ),
        conflict_columns=("dedup_key",),
        link_tables=(AnswerShareableCompany.__table__, AnswerTextChoice.__table__),
    ),
    StageDefinition(
        name="requests",
        entity_type=EntityType.REQUEST,
        source_entity="request",
        schema=RequestRecord,
        table=Request.__table__,
        depends_on=("companies", "sheets"),
        references=(EntityType.COMPANY, EntityType.SHEET, EntityType.USER, EntityType.TAG),
        link_tables=(RequestTag.__table__,),
    ),
    StageDefinition(
        name="sheet_statuses",
        entity_type=EntityType.SHEET_STATUS,
        source_entity="sheetstatuses",
        schema=SheetStatusRecord,
        table=SheetStatus.__table__,
        depends_on=("sheets",),
        references=(EntityType.SHEET, EntityType.COMPANY, EntityType.USER),
    ),
]

STAGES_BY_NAME: Dict[str, StageDefinition] = {stage.name: stage for stage in STAGES}
STAGE_NAMES: List[str] = [stage.name for stage in STAGES]


def select_stages(names: Sequence[str] = ()) -> List[StageDefinition]:
    """Stages to run, always in dependency order"""
    if not names:
        return list(STAGES)

    unknown = [name for name in names if name not in STAGES_BY_NAME]
    if unknown:
        raise ConfigurationError(
            f"Unknown stage(s): {', '.join(unknown)}",
            context={"known_stages": STAGE_NAMES}
        )
    wanted = set(names)
    return [stage for stage in STAGES if stage.name in wanted]


def downstream_of(names: Sequence[str]) -> List[StageDefinition]:
    """The given stages plus every stage that depends on them, transitively"""
    affected = set(names)
    for stage in STAGES:
        if any(dep in affected for dep in stage.depends_on):
            affected.add(stage.name)
    return [stage for stage in STAGES if stage.name in affected]
