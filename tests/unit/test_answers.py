"""
Unit tests for answer projection across sheet revisions
"""

import pytest
import pytest_asyncio
from schemas.source import AnswerRecord, parse_record
from models.base import EntityType
from migration.answers import (
    AnswerProjector,
    SkipReason,
    answer_id_for,
    dedup_key_string,
    primary_value
)
from migration.revisions import RevisionResolver


def answer(external_id, sheet="sh2", question="q1", modified="2024-03-02T00:00:00Z", **fields):
    raw = {"_id": external_id, "Sheet": sheet, "Parent Question": question, "Modified Date": modified}
    raw.update(fields)
    return parse_record(AnswerRecord, raw)


def tabular(external_id, sheet, row, text, modified="2024-03-02T00:00:00Z"):
    return answer(
        external_id, sheet=sheet, question="q2", modified=modified,
        **{"List Table Row": row, "List Table Column": "col1", "text": text}
    )


@pytest_asyncio.fixture
async def projector(identity_map):
    """Projector over one composite sheet "S" with revisions sh1 (old) and sh2 (latest)"""
    await identity_map.set_batch([("sh1", "S"), ("sh2", "S"), ("sh-orphan", "T")], EntityType.SHEET)
    await identity_map.set_batch([("q1", "Q1"), ("q2", "Q2"), ("q3", "Q3")], EntityType.QUESTION)
    await identity_map.set_batch([("ch1", "CH1")], EntityType.CHOICE)
    await identity_map.set_batch([("col1", "C1")], EntityType.LIST_TABLE_COLUMN)
    await identity_map.set_batch([("c1", "COMPANY1")], EntityType.COMPANY)

    resolver = RevisionResolver()
    resolver.register_latest("S", "sh2")
    return AnswerProjector(identity_map, resolver)


class TestPrimaryValue:
    """Test which field decides whether an answer was given"""

    def test_choice_wins(self):
        record = answer("a1", Choice="ch1", text="ignored")

        assert primary_value(record) == "ch1"

    def test_first_non_blank_field(self):
        assert primary_value(answer("a1", text="  ", Number=3)) == 3.0
        assert primary_value(answer("a1", **{"text-area": "long"})) == "long"
        assert primary_value(answer("a1")) is None

    def test_placeholder_text_does_not_hide_typed_value(self):
        """A filler text of "0" or "-" gives way to the real number, boolean or date"""
        assert primary_value(answer("a1", text="0", Number=12)) == 12.0
        assert primary_value(answer("a1", text="-", Boolean=False)) is False
        dated = primary_value(answer("a1", text="-", Date="2024-02-01T00:00:00Z"))
        assert dated.year == 2024 and dated.tzinfo is not None
        assert primary_value(answer("a1", text="n/a", Number=0)) is None


class TestAnswerProjector:
    """Test dedup, revision filtering and skip accounting"""

    @pytest.mark.asyncio
    async def test_latest_scalar_answer_wins_across_revisions(self, projector):
        """10 on the old revision, 12 on the latest: 12 survives"""
        await projector.offer(answer("a1", sheet="sh1", modified="2024-01-02T00:00:00Z", Number=10))
        await projector.offer(answer("a2", sheet="sh2", modified="2024-03-02T00:00:00Z", Number=12))

        retained = projector.retained()

        # Assertions
        assert len(retained) == 1
        assert retained[0].external_id == "a2"
        assert retained[0].sheet_id == "S"
        assert projector.stats.superseded == 1

    @pytest.mark.asyncio
    async def test_offer_order_does_not_matter(self, projector):
        await projector.offer(answer("a2", sheet="sh2", modified="2024-03-02T00:00:00Z", Number=12))
        reason = await projector.offer(answer("a1", sheet="sh1", modified="2024-01-02T00:00:00Z", Number=10))

        assert reason == SkipReason.SUPERSEDED
        assert [c.external_id for c in projector.retained()] == ["a2"]

    @pytest.mark.asyncio
    async def test_tie_goes_to_greater_external_id(self, projector):
        await projector.offer(answer("a9", Number=1))
        await projector.offer(answer("a10", Number=2))

        assert [c.external_id for c in projector.retained()] == ["a9"]

    @pytest.mark.asyncio
    async def test_tabular_rows_come_only_from_latest_revision(self, projector):
        """Rows of an older table are never interleaved with the latest one"""
        stale = await projector.offer(tabular("a3", "sh1", "r1", "X", modified="2024-01-02T00:00:00Z"))
        await projector.offer(tabular("a4", "sh2", "r1", "Y"))
        await projector.offer(tabular("a5", "sh2", "r2", "Z"))

        retained = projector.retained()

        # Assertions
        assert stale == SkipReason.STALE_REVISION
        assert sorted(c.record.text for c in retained) == ["Y", "Z"]
        assert {c.key for c in retained} == {("S", "Q2", "r1", "C1"), ("S", "Q2", "r2", "C1")}
        assert projector.stats.stale_revision == 1

    @pytest.mark.asyncio
    async def test_newer_answer_on_old_revision_is_still_stale(self, projector):
        """Revision membership, not modifiedAt, decides which table rows survive"""
        newer_stale = await projector.offer(tabular("a3", "sh1", "r1", "X", modified="2024-06-01T00:00:00Z"))
        await projector.offer(tabular("a4", "sh2", "r1", "Y", modified="2024-03-02T00:00:00Z"))

        retained = projector.retained()

        # Assertions
        assert newer_stale == SkipReason.STALE_REVISION
        assert [c.external_id for c in retained] == ["a4"]
        assert projector.stats.superseded == 0

    @pytest.mark.asyncio
    async def test_tabular_answer_with_unknown_latest_is_stale(self, projector):
        reason = await projector.offer(tabular("a6", "sh-orphan", "r1", "W"))

        assert reason == SkipReason.STALE_REVISION

    @pytest.mark.asyncio
    async def test_placeholders_are_skipped(self, projector):
        assert await projector.offer(answer("a1", text="N/A")) == SkipReason.PLACEHOLDER
        assert await projector.offer(answer("a2", Number=0)) == SkipReason.PLACEHOLDER
        assert await projector.offer(answer("a3")) == SkipReason.PLACEHOLDER
        assert projector.stats.placeholder == 3
        assert projector.retained() == []

    @pytest.mark.asyncio
    async def test_unresolved_references_are_skipped(self, projector):
        missing_sheet = await projector.offer(answer("a1", sheet="sh-missing", text="orphan"))
        missing_choice = await projector.offer(answer("a2", question="q3", Choice="ch-unknown"))
        missing_question = await projector.offer(answer("a3", question=None, text="hello"))

        # Assertions
        assert missing_sheet == missing_choice == missing_question == SkipReason.FK_UNRESOLVED
        assert projector.stats.fk_unresolved == 3
        assert projector.stats.offered == 3

    @pytest.mark.asyncio
    async def test_choice_answer_resolves_choice(self, projector):
        await projector.offer(answer("a8", question="q3", Choice="ch1"))

        candidate = projector.retained()[0]

        assert candidate.choice_id == "CH1"
        assert candidate.key == ("S", "Q3", None, None)

    @pytest.mark.asyncio
    async def test_build_row_uses_deterministic_id(self, projector):
        """The same slot always gets the same internal id"""
        await projector.offer(answer("a2", Number=12, Company="c1", text="twelve"))
        candidate = projector.retained()[0]

        row = await projector.build_row(candidate)

        # Assertions
        assert row["id"] == answer_id_for(("S", "Q1", None, None))
        assert row["dedup_key"] == dedup_key_string(candidate.key) == "S|Q1||"
        assert row["external_id"] == "a2"
        assert row["number_value"] == 12.0
        assert row["text_value"] == "twelve"
        assert row["company_id"] == "COMPANY1"
        assert row["created_by"] is None
        assert row["source_revision_external_id"] == "sh2"

    def test_answer_ids_differ_per_slot(self):
        assert answer_id_for(("S", "Q2", "r1", "C1")) != answer_id_for(("S", "Q2", "r2", "C1"))
        assert answer_id_for(("S", "Q1", None, None)) == answer_id_for(("S", "Q1", None, None))

    @pytest.mark.asyncio
    async def test_stats_account_for_every_offer(self, projector):
        records = [
            answer("a1", sheet="sh1", modified="2024-01-02T00:00:00Z", Number=10),
            answer("a2", Number=12),
            tabular("a3", "sh1", "r1", "X", modified="2024-01-02T00:00:00Z"),
            tabular("a4", "sh2", "r1", "Y"),
            answer("a6", text="-"),
            answer("a7", sheet="sh-missing", text="orphan"),
        ]
        for record in records:
            await projector.offer(record)

        retained = projector.retained()
        stats = projector.stats.as_dict()

        # Assertions
        assert len(retained) == 2
        dropped = stats["placeholder"] + stats["fk_unresolved"] + stats["stale_revision"] + stats["superseded"]
        assert stats["offered"] == stats["retained"] + dropped

    @pytest.mark.asyncio
    async def test_build_links_for_shared_companies_and_text_choices(self, projector):
        await projector.offer(answer(
            "a2", text="metals",
            **{"Shareable with": ["c1", "c-unknown", "c1"], "List of Text Choices": ["Lead", "", "Tin"]}
        ))
        candidate = projector.retained()[0]

        shareable, text_choices = await projector.build_links(candidate)

        # Assertions
        assert shareable.table.name == "answer_shareable_companies"
        assert shareable.rows == [{"company_id": "COMPANY1"}]
        assert text_choices.rows == [
            {"text_choice": "Lead", "order_number": 0},
            {"text_choice": "Tin", "order_number": 1},
        ]
        assert shareable.replace and text_choices.replace

    @pytest.mark.asyncio
    async def test_build_links_without_relations_still_replace(self, projector):
        await projector.offer(answer("a2", Number=12))

        links = await projector.build_links(projector.retained()[0])

        assert [link.rows for link in links] == [[], []]
        assert all(link.replace for link in links)
