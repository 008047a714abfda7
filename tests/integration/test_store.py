"""
Integration tests for the target store and the SQL-backed identity map
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from models.base import EntityType, MigrationMode, RunStatus
from models.migration_run import MigrationRun
from models.questionnaire import Answer, AnswerTextChoice, Choice, Company, Question, QuestionTag, Sheet, Tag
from migration.identity_map import IdentityMap, SqlMappingStore
from migration.retry import RetryPolicy
from migration.store import TargetStore, is_transient, translate_error
from core.exceptions import BatchWriteError, StoreTransientError, StoreUnavailable


async def no_sleep(delay):
    return None


async def count_rows(session_maker, table) -> int:
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(table))).scalar()


class TestTargetStore:
    """Test upserts, truncation, question lookup and run audit on SQLite"""

    @pytest.mark.asyncio
    async def test_upsert_returns_stored_ids(self, session_maker):
        store = TargetStore(session_maker)
        rows = [
            {"id": "i1", "external_id": "c1", "name": "Acme", "active": True},
            {"id": "i2", "external_id": "c2", "name": "Globex", "active": True},
        ]

        first = await store.upsert_rows(Company.__table__, rows, ["external_id"])
        second = await store.upsert_rows(
            Company.__table__,
            [{"id": "other", "external_id": "c1", "name": "Acme Corp", "active": False}],
            ["external_id"]
        )

        # Assertions
        assert sorted(first) == [("i1", "c1"), ("i2", "c2")]
        assert second == [("i1", "c1")]
        assert await count_rows(session_maker, Company.__table__) == 2
        async with session_maker() as session:
            company = (await session.execute(select(Company).where(Company.external_id == "c1"))).scalar_one()
        assert company.name == "Acme Corp"
        assert company.active is False
        assert company.migrated_at is not None

    @pytest.mark.asyncio
    async def test_constraint_violation_is_batch_write_error(self, session_maker):
        store = TargetStore(session_maker)

        with pytest.raises(BatchWriteError):
            await store.upsert_rows(
                Company.__table__,
                [{"id": "i1", "external_id": "c1", "name": None, "active": True}],
                ["external_id"]
            )

    @pytest.mark.asyncio
    async def test_links_ignore_existing_pairs(self, session_maker):
        store = TargetStore(session_maker)
        await store.upsert_rows(Tag.__table__, [{"id": "T1", "external_id": "t1", "name": "HQ"}], ["external_id"])
        await store.upsert_rows(
            Question.__table__, [{"id": "Q1", "external_id": "q1", "required": False}], ["external_id"]
        )

        await store.insert_links(QuestionTag.__table__, [{"question_id": "Q1", "tag_id": "T1"}])
        await store.insert_links(QuestionTag.__table__, [{"question_id": "Q1", "tag_id": "T1"}])

        assert await count_rows(session_maker, QuestionTag.__table__) == 1

    @pytest.mark.asyncio
    async def test_truncate_children_first(self, session_maker):
        store = TargetStore(session_maker)
        await store.upsert_rows(Tag.__table__, [{"id": "T1", "external_id": "t1", "name": "HQ"}], ["external_id"])
        await store.upsert_rows(
            Question.__table__, [{"id": "Q1", "external_id": "q1", "required": False}], ["external_id"]
        )
        await store.insert_links(QuestionTag.__table__, [{"question_id": "Q1", "tag_id": "T1"}])

        await store.truncate([QuestionTag.__table__, Question.__table__], cascade=True)

        # Assertions
        assert await count_rows(session_maker, QuestionTag.__table__) == 0
        assert await count_rows(session_maker, Question.__table__) == 0
        assert await count_rows(session_maker, Tag.__table__) == 1

    @pytest.mark.asyncio
    async def test_tabular_answers_listed_and_deleted_by_id(self, session_maker):
        store = TargetStore(session_maker)
        await store.upsert_rows(Sheet.__table__, [{
            "id": "S", "external_id": "sh2", "revision_external_ids": ["sh1", "sh2"], "name": "Widget A"
        }], ["id"])
        await store.upsert_rows(
            Question.__table__, [{"id": "Q2", "external_id": "q2", "required": False}], ["external_id"]
        )
        base = {"sheet_id": "S", "question_id": "Q2", "source_revision_external_id": "sh2"}
        await store.upsert_rows(Answer.__table__, [
            {**base, "id": "A1", "external_id": "a1", "dedup_key": "S|Q2||", "text_value": "scalar"},
            {**base, "id": "A4", "external_id": "a4", "dedup_key": "S|Q2|r1|", "list_table_row_ref": "r1"},
        ], ["dedup_key"])
        await store.insert_links(AnswerTextChoice.__table__, [
            {"answer_id": "A4", "text_choice": "Lead", "order_number": 0},
            {"answer_id": "A1", "text_choice": "Tin", "order_number": 0},
        ])

        tabular = await store.fetch_tabular_answers()
        removed_links = await store.delete_where_in(AnswerTextChoice.__table__, "answer_id", ["A4"])
        removed = await store.delete_where_in(Answer.__table__, "id", ["A4", "A4"])

        # Assertions
        assert tabular == [("A4", "a4", "S", "sh2")]
        assert removed_links == 1
        assert removed == 1
        assert await count_rows(session_maker, Answer.__table__) == 1
        assert await count_rows(session_maker, AnswerTextChoice.__table__) == 1
        assert await store.delete_where_in(Answer.__table__, "id", []) == 0

    @pytest.mark.asyncio
    async def test_fetch_questions_with_ordered_choices(self, session_maker):
        store = TargetStore(session_maker)
        await store.upsert_rows(Question.__table__, [{
            "id": "Q3", "external_id": "q3", "content": "Certified?", "response_type": "Dropdown", "required": True
        }], ["external_id"])
        await store.upsert_rows(Choice.__table__, [
            {"id": "CH2", "external_id": "ch2", "question_id": "Q3", "content": "No", "order_number": 2},
            {"id": "CH1", "external_id": "ch1", "question_id": "Q3", "content": "Yes", "order_number": 1},
        ], ["external_id"])

        questions = await store.fetch_questions(["Q3", "Q-missing", "Q3"])

        # Assertions
        assert list(questions) == ["Q3"]
        assert questions["Q3"]["required"] is True
        assert [c["content"] for c in questions["Q3"]["choices"]] == ["Yes", "No"]
        assert await store.fetch_questions([]) == {}

    @pytest.mark.asyncio
    async def test_run_audit(self, session_maker):
        store = TargetStore(session_maker)
        await store.start_run(MigrationRun(
            run_id="run-1", mode=MigrationMode.FRESH, dry_run=False, status=RunStatus.RUNNING, stages={}
        ))

        await store.finish_run(
            "run-1",
            RunStatus.PARTIAL,
            stages={"companies": {"status": "success", "migrated": 2}},
            totals={"migrated": 2, "skipped": 0, "failed": 1},
            error_message=None
        )

        async with session_maker() as session:
            run = (await session.execute(select(MigrationRun).where(MigrationRun.run_id == "run-1"))).scalar_one()

        # Assertions
        assert run.status == RunStatus.PARTIAL
        assert run.records_migrated == 2
        assert run.records_failed == 1
        assert run.stages["companies"]["migrated"] == 2
        assert run.completed_at is not None
        assert run.duration_seconds >= 0

    def test_error_translation(self):
        transient = OperationalError("SELECT 1", {}, Exception("connection refused"))

        assert is_transient(transient)
        assert is_transient(ConnectionResetError())
        assert isinstance(translate_error(transient, {}), StoreTransientError)
        assert isinstance(translate_error(ValueError("bad"), {"table_name": "x"}), BatchWriteError)


class TestSqlMappingStore:
    """Test the persistent identity map"""

    @pytest.mark.asyncio
    async def test_entries_survive_a_new_identity_map(self, session_maker):
        store = SqlMappingStore(session_maker)
        first_run = IdentityMap(store)
        await first_run.set_batch([("sh1", "S"), ("sh2", "S")], EntityType.SHEET)
        await first_run.set("sh2", "S2", EntityType.SHEET)

        second_run = IdentityMap(store)
        loaded = await second_run.preload_cache(EntityType.SHEET)

        # Assertions
        assert loaded == 2
        assert await second_run.get("sh1", EntityType.SHEET) == "S"
        assert await second_run.get("sh2", EntityType.SHEET) == "S2"
        assert len(await store.fetch_all("sheet")) == 2

    @pytest.mark.asyncio
    async def test_batch_lookup_and_clear(self, session_maker):
        store = SqlMappingStore(session_maker)
        identity_map = IdentityMap(store)
        await identity_map.set_batch([(f"q{i}", f"Q{i}") for i in range(1200)], EntityType.QUESTION)

        fresh_map = IdentityMap(store)
        found = await fresh_map.get_batch(["q0", "q1199", "nope"], EntityType.QUESTION)
        removed = await fresh_map.clear(EntityType.QUESTION)

        # Assertions
        assert found == ["Q0", "Q1199", None]
        assert removed == 1200
        assert await store.fetch_all("question") == {}

    @pytest.mark.asyncio
    async def test_forget_removes_only_named_entries(self, session_maker):
        store = SqlMappingStore(session_maker)
        identity_map = IdentityMap(store)
        await identity_map.set_batch([("a3", "A3"), ("a4", "A4"), ("a5", "A5")], EntityType.ANSWER)

        removed = await identity_map.forget(["a4", "a5", "never-mapped"], EntityType.ANSWER)

        # Assertions
        assert removed == 2
        assert identity_map.cached("a4", EntityType.ANSWER) is None
        assert await store.fetch_all("answer") == {"a3": "A3"}

    @pytest.mark.asyncio
    async def test_unreachable_store_raises_store_unavailable(self):
        session_maker = MagicMock(side_effect=ConnectionRefusedError("no route"))
        store = SqlMappingStore(
            session_maker,
            retry_policy=RetryPolicy(max_attempts=2, backoff=lambda attempt: 0.0, sleep=no_sleep)
        )

        with pytest.raises(StoreUnavailable):
            await store.fetch_all("company")

        assert session_maker.call_count == 2
