"""
Target store access: idempotent multi-row upserts, truncation and run audit.

Writes go through `INSERT ... ON CONFLICT` so a re-run never duplicates a
row. PostgreSQL is the production dialect; SQLite (aiosqlite) supports the
same statements and is used by the test suite.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import Table, delete, or_, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError, OperationalError, InterfaceError, DBAPIError
from sqlalchemy.ext.asyncio import async_sessionmaker
from models.migration_run import MigrationRun
from models.questionnaire import Answer, Choice, Question, Sheet
from models.base import RunStatus
from core.exceptions import BatchWriteError, StoreTransientError, LoadError
import logging

logger = logging.getLogger(__name__)


def dialect_insert(dialect_name: str):
    """Insert construct with on_conflict support for the given dialect"""
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise ValueError(f"Unsupported target dialect: {dialect_name}")


def is_transient(error: BaseException) -> bool:
    """Connection-level failures that may succeed when retried"""
    if isinstance(error, OSError):
        return True
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


def translate_error(error: BaseException, context: Dict[str, Any]) -> LoadError:
    """Map a driver/SQLAlchemy error onto the load error taxonomy"""
    if is_transient(error):
        return StoreTransientError("Target store connection failed", context=context, original_exception=error)

    constraint = getattr(getattr(error, "orig", None), "constraint_name", None)
    if constraint:
        context = {**context, "constraint_name": constraint}
    return BatchWriteError("Target store rejected the write", context=context, original_exception=error)


class TargetStore:
    """
    Relational target for migrated rows.

    Ensures:
    - No duplicate rows on repeated runs (upsert keyed per table)
    - One transaction per chunk
    - Errors surface as StoreTransientError (retry) or BatchWriteError (bad data)
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @property
    def dialect_name(self) -> str:
        return self.session_maker.kw["bind"].dialect.name

    async def upsert_rows(
        self,
        table: Table,
        rows: Sequence[Dict[str, Any]],
        conflict_columns: Sequence[str]
    ) -> List[Tuple[str, str]]:
        """
        Insert rows, updating existing ones on conflict.

        Args:
            table: Target table (must have id and external_id columns)
            rows: Row dictionaries
            conflict_columns: Unique columns that identify an existing row

        Returns:
            (id, external_id) of every written row, as stored

        Raises:
            StoreTransientError: Connection-level failure
            BatchWriteError: Constraint or data error (whole statement rolled back)
        """
        if not rows:
            return []

        prepared = self._prepare(table, rows)
        insert = dialect_insert(self.dialect_name)
        stmt = insert(table).values(prepared)

        protected = set(conflict_columns) | {"id"}
        update_columns = [name for name in prepared[0] if name not in protected]
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_columns),
                set_={name: stmt.excluded[name] for name in update_columns}
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
        stmt = stmt.returning(table.c.id, table.c.external_id)

        context = {"table_name": table.name, "batch_size": len(prepared)}
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return [(row[0], row[1]) for row in result.all()]
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, context)

    async def insert_links(self, table: Table, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert link-table rows, ignoring pairs that already exist"""
        if not rows:
            return 0

        insert = dialect_insert(self.dialect_name)
        key_columns = [column.name for column in table.primary_key.columns]
        stmt = insert(table).values(list(rows)).on_conflict_do_nothing(index_elements=key_columns)

        try:
            async with self.session_maker() as session:
                async with session.begin():
                    await session.execute(stmt)
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"table_name": table.name, "batch_size": len(rows)})
        return len(rows)

    async def truncate(self, tables: Sequence[Table], cascade: bool = False) -> None:
        """
        Empty the given tables.

        Args:
            tables: Tables in deletion order (children before parents)
            cascade: Use one `TRUNCATE ... CASCADE` on PostgreSQL; only safe
                when every table that references them is emptied too
        """
        if not tables:
            return
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    if cascade and self.dialect_name == "postgresql":
                        names = ", ".join(f'"{table.name}"' for table in tables)
                        await session.execute(text(f"TRUNCATE TABLE {names} CASCADE"))
                    else:
                        for table in tables:
                            await session.execute(delete(table))
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "TRUNCATE", "tables": [t.name for t in tables]})

        logger.info(f"Truncated {', '.join(table.name for table in tables)}")

    async def delete_where_in(self, table: Table, column: str, values: Sequence[Any]) -> int:
        """Delete rows of `table` whose `column` is one of `values`"""
        values = list(dict.fromkeys(values))
        if not values:
            return 0
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(delete(table).where(table.c[column].in_(values)))
                    return int(result.rowcount or 0)
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "DELETE", "table_name": table.name})

    async def fetch_tabular_answers(self) -> List[Tuple[str, str, str, Optional[str]]]:
        """(id, external_id, sheet_id, source revision external id) of every list-table answer"""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(
                        Answer.id,
                        Answer.external_id,
                        Answer.sheet_id,
                        Answer.source_revision_external_id
                    ).where(or_(
                        Answer.list_table_row_ref.isnot(None),
                        Answer.list_table_column_id.isnot(None)
                    ))
                )
                return [(row[0], row[1], row[2], row[3]) for row in result.all()]
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "SELECT", "table_name": "answers"})

    async def fetch_sheet_latest_revisions(self) -> List[Tuple[str, str]]:
        """(internal id, latest revision external id) of every migrated sheet"""
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(Sheet.id, Sheet.external_id))
                return [(row[0], row[1]) for row in result.all()]
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "SELECT", "table_name": "sheets"})

    async def fetch_questions(self, question_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """
        Question metadata with its choices, keyed by internal question id.

        Returns:
            {id: {"id", "content", "response_type", "required", "choices": [{"id", "content"}]}}
        """
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            return {}
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(Question.id, Question.content, Question.response_type, Question.required)
                    .where(Question.id.in_(ids))
                )
                questions = {
                    row[0]: {
                        "id": row[0],
                        "content": row[1],
                        "response_type": row[2],
                        "required": bool(row[3]),
                        "choices": [],
                    }
                    for row in result.all()
                }
                result = await session.execute(
                    select(Choice.id, Choice.content, Choice.question_id)
                    .where(Choice.question_id.in_(list(questions)))
                    .order_by(Choice.question_id, Choice.order_number)
                )
                for choice_id, content, question_id in result.all():
                    questions[question_id]["choices"].append({"id": choice_id, "content": content})
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "SELECT", "table_name": "questions"})
        return questions

    @staticmethod
    def _prepare(table: Table, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Give every row the same keys so one VALUES clause fits all"""
        keys: List[str] = []
        for row in rows:
            for key in row:
                if key not in keys:
                    keys.append(key)

        now = datetime.now(timezone.utc)
        stamp = "migrated_at" in table.c and "migrated_at" not in keys
        prepared = []
        for row in rows:
            values = {key: row.get(key) for key in keys}
            if stamp:
                values["migrated_at"] = now
            prepared.append(values)
        return prepared

    # ------------------------------------------------------------------
    # Run audit
    # ------------------------------------------------------------------

    async def start_run(self, run: MigrationRun) -> MigrationRun:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(run)
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "INSERT", "table_name": "migration_runs"})
        return run

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        stages: Dict[str, Any],
        totals: Dict[str, int],
        error_message: Optional[str] = None
    ) -> None:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(select(MigrationRun).where(MigrationRun.run_id == run_id))
                    run = result.scalar_one_or_none()
                    if run is None:
                        logger.warning(f"Migration run {run_id} not found; audit not updated")
                        return

                    run.status = status
                    run.completed_at = datetime.now(timezone.utc)
                    started = run.started_at
                    if started is not None and started.tzinfo is None:
                        started = started.replace(tzinfo=timezone.utc)
                    if started is not None:
                        run.duration_seconds = (run.completed_at - started).total_seconds()
                    run.stages = stages
                    run.records_migrated = totals.get("migrated", 0)
                    run.records_skipped = totals.get("skipped", 0)
                    run.records_failed = totals.get("failed", 0)
                    run.error_message = error_message
        except (SQLAlchemyError, OSError) as e:
            raise translate_error(e, {"operation": "UPDATE", "table_name": "migration_runs"})
