"""
Composite sheet resolution.

The source keeps every re-submission of a questionnaire sheet as its own
record. Records with the same case-insensitive name for the same owner
company are revisions of one logical sheet: they collapse into one composite
with one internal id, and every revision id maps to it so that answers from
any revision find the same parent.
"""

import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from schemas.source import SheetRecord
import logging

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str]


def group_key(name: Optional[str], owner_company: Optional[str]) -> GroupKey:
    """(trimmed lower-case name, owner company external id)"""
    return ((name or "").strip().lower(), owner_company or "")


def _revision_order(record: SheetRecord):
    return (record.effective_modified_at, record.external_id)


@dataclass
class CompositeSheet:
    """One logical sheet built from all of its revisions"""
    internal_id: str
    key: GroupKey
    revisions: List[SheetRecord] = field(default_factory=list)  # latest first

    @property
    def latest(self) -> SheetRecord:
        return self.revisions[0]

    @property
    def latest_external_id(self) -> str:
        return self.latest.external_id

    @property
    def external_ids(self) -> List[str]:
        return [revision.external_id for revision in self.revisions]

    @property
    def version_count(self) -> int:
        return len(self.revisions)

    @property
    def tag_external_ids(self) -> List[str]:
        """Union of tags across revisions, in first-seen order (latest first)"""
        tags: Dict[str, None] = {}
        for revision in self.revisions:
            for tag in revision.tags:
                tags.setdefault(tag, None)
        return list(tags)


class RevisionResolver:
    """
    Group sheet revisions and track each group's latest revision.

    Usage:
        resolver.add_many(records)
        composites = resolver.resolve(existing=identity_map.snapshot("sheet"))
        resolver.latest_external_id_for(composites[0].internal_id)
    """

    def __init__(self, id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self._id_factory = id_factory
        self._groups: Dict[GroupKey, Dict[str, SheetRecord]] = {}
        self._latest_by_internal: Dict[str, str] = {}

    def add(self, record: SheetRecord) -> None:
        key = group_key(record.name, record.owner_company)
        # A record seen twice (page overlap) counts as one revision
        self._groups.setdefault(key, {})[record.external_id] = record

    def add_many(self, records: Iterable[SheetRecord]) -> None:
        for record in records:
            self.add(record)

    @property
    def record_count(self) -> int:
        return sum(len(group) for group in self._groups.values())

    def resolve(self, existing: Optional[Mapping[str, str]] = None) -> List[CompositeSheet]:
        """
        Build composites for every group added so far.

        Args:
            existing: Known {external_id: internal_id} sheet mappings. A group
                reuses the internal id already assigned to one of its
                revisions (the latest mapped one wins) instead of minting.

        Returns:
            Composites, in the order their groups were first seen
        """
        existing = existing or {}
        composites = []

        for key, members in self._groups.items():
            revisions = sorted(members.values(), key=_revision_order, reverse=True)

            known = [existing[r.external_id] for r in revisions if r.external_id in existing]
            if len(set(known)) > 1:
                logger.warning(
                    f"Sheet group {key!r} spans {len(set(known))} internal ids; "
                    f"keeping {known[0]}"
                )
            internal_id = known[0] if known else self._id_factory()

            composite = CompositeSheet(internal_id=internal_id, key=key, revisions=revisions)
            self._latest_by_internal[internal_id] = composite.latest_external_id
            composites.append(composite)

        merged = sum(c.version_count for c in composites) - len(composites)
        logger.info(
            f"Resolved {self.record_count} sheet records into {len(composites)} composites "
            f"({merged} older revisions merged)"
        )
        return composites

    def register_latest(self, internal_id: str, latest_external_id: str) -> None:
        """Record a composite migrated by an earlier run (answers-only runs)"""
        self._latest_by_internal[internal_id] = latest_external_id

    def latest_external_id_for(self, internal_id: Optional[str]) -> Optional[str]:
        if not internal_id:
            return None
        return self._latest_by_internal.get(internal_id)

    def latest_revisions(self) -> Dict[str, str]:
        """{internal id: latest revision external id} of every known composite"""
        return dict(self._latest_by_internal)

    def __len__(self) -> int:
        return len(self._latest_by_internal)
