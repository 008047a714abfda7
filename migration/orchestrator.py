"""
Migration orchestrator: runs the entity stages in dependency order.

Each stage fetches its endpoint page by page, parses and transforms the
records and hands them to a BatchWriter. Row-level failures are counted and
the stage carries on; FetchExhausted, SourceAPIError and StoreUnavailable
abort the stage, and every stage that depends on it is skipped. Independent
stages still run.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from pydantic import ValidationError
from models.base import EntityType, RunStatus, StageStatus
from models.migration_run import MigrationRun
from schemas.source import SourceRecord, parse_record
from migration.answers import AnswerCandidate, AnswerProjector
from migration.context import MigrationContext, map_bounded
from migration.revisions import CompositeSheet
from migration.stages import STAGES, StageDefinition, StageKind, downstream_of, select_stages
from migration.transformers import RecordTransformer
from migration.writer import BatchWriter, PendingRow, ProgressTracker, StageStats
from core.exceptions import (
    FetchExhausted,
    LoadError,
    MigrationException,
    RowTransformError,
    SourceAPIError,
    StoreTransientError,
    StoreUnavailable
)
import logging

logger = logging.getLogger(__name__)

FATAL_STAGE_ERRORS = (FetchExhausted, SourceAPIError, StoreUnavailable)


@dataclass
class StageResult:
    """Outcome of one stage"""
    name: str
    status: StageStatus = StageStatus.PENDING
    stats: StageStats = field(default_factory=StageStats)
    projection: Optional[Dict[str, int]] = None
    pruned: int = 0
    duration_seconds: float = 0.0
    error: Optional[Dict[str, Any]] = None
    error_details: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            **self.stats.as_dict(),
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.projection is not None:
            data["projection"] = self.projection
        if self.pruned:
            data["pruned"] = self.pruned
        if self.error is not None:
            data["error"] = self.error
        if self.error_details:
            data["failed_rows"] = len(self.error_details)
        return data


@dataclass
class MigrationReport:
    """Result of one run, one StageResult per selected stage"""
    run_id: str
    mode: str
    dry_run: bool
    stages: List[StageResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def has_fatal_errors(self) -> bool:
        return any(stage.status == StageStatus.FAILED for stage in self.stages)

    def totals(self) -> Dict[str, int]:
        totals = {"migrated": 0, "skipped": 0, "failed": 0}
        for stage in self.stages:
            for key, value in stage.stats.as_dict().items():
                totals[key] += value
        return totals

    @property
    def status(self) -> RunStatus:
        if self.has_fatal_errors:
            succeeded = any(stage.status == StageStatus.SUCCESS for stage in self.stages)
            return RunStatus.PARTIAL if succeeded else RunStatus.FAILED
        if self.totals()["failed"] > 0:
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    def error_message(self) -> Optional[str]:
        failed = [
            f"{stage.name}: {stage.error.get('message')}"
            for stage in self.stages
            if stage.status == StageStatus.FAILED and stage.error
        ]
        return "; ".join(failed) or None

    def summary_lines(self) -> List[str]:
        prefix = "[DRY RUN] " if self.dry_run else ""
        lines = [f"{prefix}Migration {self.run_id} ({self.mode}): {self.status.value}"]
        for stage in self.stages:
            stats = stage.stats
            line = (
                f"  {stage.name:<20} {stage.status.value:<8} migrated={stats.migrated} "
                f"skipped={stats.skipped} failed={stats.failed}"
            )
            if stage.error:
                line += f" error={stage.error.get('message')}"
            lines.append(line)
        totals = self.totals()
        lines.append(
            f"  {'total':<20} {'':<8} migrated={totals['migrated']} "
            f"skipped={totals['skipped']} failed={totals['failed']}"
        )
        return lines

    def as_dict(self) -> Dict[str, Any]:
        return {stage.name: stage.as_dict() for stage in self.stages}


class MigrationOrchestrator:
    """
    Run selected stages against one MigrationContext.

    Usage:
        context = MigrationContext.create(settings, session_maker, mode=MigrationMode.FRESH)
        try:
            report = await MigrationOrchestrator(context).run(["companies", "users"])
        finally:
            await context.close()
    """

    def __init__(self, context: MigrationContext):
        self.context = context
        self._audit_enabled = False

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, stage_names: Sequence[str] = ()) -> MigrationReport:
        """
        Run the selected stages (all by default) in dependency order.

        Raises:
            ConfigurationError: Unknown stage name
        """
        ctx = self.context
        stages = select_stages(stage_names)
        report = MigrationReport(run_id=ctx.run_id, mode=ctx.mode.value, dry_run=ctx.dry_run)

        logger.info(
            f"Starting migration {ctx.run_id}: mode={ctx.mode.value} dry_run={ctx.dry_run} "
            f"stages={','.join(s.name for s in stages)}"
            + (f" limit={ctx.record_limit}" if ctx.record_limit else "")
        )
        await self._start_audit()

        try:
            if ctx.is_fresh:
                try:
                    await self._prepare_fresh(stages)
                except FATAL_STAGE_ERRORS as e:
                    logger.error(f"Fresh preparation failed: {e}", extra={"error_context": e.to_dict()})
                    for stage in stages:
                        report.stages.append(
                            StageResult(name=stage.name, status=StageStatus.FAILED, error=e.to_dict())
                        )
                    return report

            unavailable: set = set()
            for stage in stages:
                blocked = [dep for dep in stage.depends_on if dep in unavailable]
                if blocked:
                    logger.warning(f"Skipping stage {stage.name}: depends on failed stage(s) {', '.join(blocked)}")
                    report.stages.append(StageResult(
                        name=stage.name,
                        status=StageStatus.SKIPPED,
                        error={"message": f"Depends on failed stage(s): {', '.join(blocked)}"}
                    ))
                    unavailable.add(stage.name)
                    continue

                result = await self.run_stage(stage)
                report.stages.append(result)
                if result.status == StageStatus.FAILED:
                    unavailable.add(stage.name)
        finally:
            report.completed_at = datetime.now(timezone.utc)
            await self._finish_audit(report)

        for line in report.summary_lines():
            logger.info(line)
        return report

    async def run_stage(self, stage: StageDefinition) -> StageResult:
        """Run one stage; fatal errors are recorded on the result, not raised"""
        result = StageResult(name=stage.name)
        started = time.monotonic()
        logger.info(f"Stage {stage.name} starting")

        handlers = {
            StageKind.RECORDS: self._run_record_stage,
            StageKind.SHEETS: self._run_sheet_stage,
            StageKind.ANSWERS: self._run_answer_stage,
        }

        try:
            await self._preload(stage)
            await handlers[stage.kind](stage, result)
            result.status = StageStatus.SUCCESS
        except FATAL_STAGE_ERRORS as e:
            result.status = StageStatus.FAILED
            result.error = e.to_dict()
            logger.error(
                f"Stage {stage.name} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
        finally:
            result.duration_seconds = time.monotonic() - started

        logger.info(
            f"Stage {stage.name} {result.status.value} in {result.duration_seconds:.1f}s: "
            f"migrated={result.stats.migrated} skipped={result.stats.skipped} failed={result.stats.failed}"
        )
        return result

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def _preload(self, stage: StageDefinition) -> None:
        identity_map = self.context.identity_map
        for entity_type in dict.fromkeys(stage.references + (stage.entity_type,)):
            await identity_map.preload_cache(entity_type)

    async def _prepare_fresh(self, stages: List[StageDefinition]) -> None:
        """Empty the selected stages, and every stage depending on them, children first"""
        ctx = self.context
        affected = downstream_of([stage.name for stage in stages])

        selected = {stage.name for stage in stages}
        extra = [stage.name for stage in affected if stage.name not in selected]
        if extra:
            logger.warning(
                f"Fresh run also clears dependent stage(s) {', '.join(extra)}; "
                f"run them again to repopulate"
            )

        tables = [table for stage in reversed(affected) for table in stage.tables]
        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would truncate {', '.join(t.name for t in tables)}")
        else:
            full = len(affected) == len(STAGES)
            await self._store_call(
                lambda: ctx.store.truncate(tables, cascade=full),
                "truncate target tables"
            )

        for stage in reversed(affected):
            await ctx.identity_map.clear(stage.entity_type)

    async def _store_call(self, operation, description: str):
        """Run a store operation under the write policy; failures are fatal to the stage"""
        ctx = self.context
        try:
            return await ctx.write_policy.call(
                operation,
                retry_on=(StoreTransientError,),
                description=description
            )
        except LoadError as e:
            raise StoreUnavailable(
                f"Target store unavailable: {description}",
                context={"operation": description},
                original_exception=e
            )

    async def _expected_total(self, stage: StageDefinition) -> int:
        ctx = self.context
        total = await ctx.paginator.count(stage.source_entity)
        if ctx.record_limit is not None:
            total = min(total, ctx.record_limit)
        return total

    def _writer(self, stage: StageDefinition, result: StageResult, total: Optional[int]) -> BatchWriter:
        ctx = self.context
        progress = ProgressTracker(
            stage.name,
            result.stats,
            total=total,
            every_batches=ctx.settings.PROGRESS_EVERY_BATCHES
        )
        return BatchWriter(
            store=ctx.store,
            identity_map=ctx.identity_map,
            entity_type=stage.entity_type,
            table=stage.table,
            conflict_columns=stage.conflict_columns,
            stats=result.stats,
            retry_policy=ctx.write_policy,
            batch_size=ctx.batch_size,
            dry_run=ctx.dry_run,
            progress=progress
        )

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _row_failed(self, result: StageResult, error: MigrationException) -> None:
        result.stats.failed += 1
        result.error_details.append(error.to_dict())
        logger.warning(str(error), extra={"error_context": error.context})

    def _parse(self, stage: StageDefinition, raw: Any, result: StageResult) -> Optional[SourceRecord]:
        try:
            return parse_record(stage.schema, raw)
        except ValidationError as e:
            external_id = raw.get("_id") if isinstance(raw, dict) else None
            self._row_failed(result, RowTransformError(
                f"Invalid {stage.entity_type.value} record",
                context={"entity_type": stage.entity_type.value, "external_id": external_id},
                original_exception=e
            ))
            return None

    async def _already_migrated(self, external_id: str, entity_type: EntityType, result: StageResult) -> bool:
        """Incremental mode: skip records with a mapping from an earlier run"""
        if self.context.is_fresh:
            return False
        if await self.context.identity_map.is_migrated(external_id, entity_type):
            result.stats.skipped += 1
            return True
        return False

    async def _flush_full_batches(self, writer: BatchWriter, buffer: List[PendingRow]) -> None:
        batch_size = self.context.batch_size
        full = len(buffer) - len(buffer) % batch_size
        if full:
            await writer.write(buffer[:full])
            del buffer[:full]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_record_stage(self, stage: StageDefinition, result: StageResult) -> None:
        """One source record becomes one row"""
        ctx = self.context
        writer = self._writer(stage, result, await self._expected_total(stage))
        transformer = RecordTransformer(ctx.identity_map)

        async def prepare(raw: Any) -> Optional[PendingRow]:
            record = self._parse(stage, raw, result)
            if record is None:
                return None
            if await self._already_migrated(record.external_id, stage.entity_type, result):
                return None
            try:
                return await transformer.transform(stage.entity_type, record)
            except RowTransformError as e:
                self._row_failed(result, e)
                return None

        buffer: List[PendingRow] = []
        async for items in ctx.paginator.iterate_pages(stage.source_entity, max_records=ctx.record_limit):
            pending = await map_bounded(items, prepare, ctx.transform_concurrency)
            buffer.extend(row for row in pending if row is not None)
            await self._flush_full_batches(writer, buffer)

        await writer.write(buffer)
        result.error_details.extend(writer.error_details)
        writer.progress.finish()

    async def _run_sheet_stage(self, stage: StageDefinition, result: StageResult) -> None:
        """Collect every sheet revision, merge them into composites, write one row per composite"""
        ctx = self.context
        total = await self._expected_total(stage)

        records = []
        async for raw in ctx.paginator.iterate_all(stage.source_entity, max_records=ctx.record_limit):
            record = self._parse(stage, raw, result)
            if record is not None:
                records.append(record)

        ctx.resolver.add_many(records)
        composites = ctx.resolver.resolve(existing=ctx.identity_map.snapshot(EntityType.SHEET))

        writer = self._writer(stage, result, total)
        transformer = RecordTransformer(ctx.identity_map)

        async def prepare(composite: CompositeSheet) -> Optional[PendingRow]:
            if not ctx.is_fresh and all(
                ctx.identity_map.cached(x, EntityType.SHEET) for x in composite.external_ids
            ):
                result.stats.skipped += 1
                return None
            try:
                return await transformer.transform_sheet(composite)
            except (TypeError, ValueError, OverflowError) as e:
                self._row_failed(result, RowTransformError(
                    "Failed to transform sheet",
                    context={"entity_type": EntityType.SHEET.value, "external_id": composite.latest_external_id},
                    original_exception=e
                ))
                return None

        for chunk in self._slices(composites):
            pending = await map_bounded(chunk, prepare, ctx.transform_concurrency)
            await writer.write([row for row in pending if row is not None])
        result.error_details.extend(writer.error_details)
        writer.progress.finish()

    async def _run_answer_stage(self, stage: StageDefinition, result: StageResult) -> None:
        """Project answers onto composite sheets, then write the retained ones"""
        ctx = self.context

        if len(ctx.resolver) == 0:
            latest = await self._store_call(ctx.store.fetch_sheet_latest_revisions, "load sheet revisions")
            for internal_id, latest_external_id in latest:
                ctx.resolver.register_latest(internal_id, latest_external_id)
            logger.info(f"Loaded latest revisions of {len(latest)} migrated sheets")

        projector = AnswerProjector(ctx.identity_map, ctx.resolver)
        async for items in ctx.paginator.iterate_pages(stage.source_entity, max_records=ctx.record_limit):
            records = [r for r in (self._parse(stage, raw, result) for raw in items) if r is not None]
            await map_bounded(records, projector.offer, ctx.transform_concurrency)

        candidates = projector.retained()
        result.stats.skipped += projector.stats.offered - len(candidates)
        result.projection = projector.stats.as_dict()
        logger.info(f"Answer projection: {result.projection}")

        if not ctx.is_fresh:
            result.pruned = await self._prune_stale_tabular_answers(stage)

        writer = self._writer(stage, result, result.stats.processed + len(candidates))

        async def prepare(candidate: AnswerCandidate) -> Optional[PendingRow]:
            if await self._already_migrated(candidate.external_id, EntityType.ANSWER, result):
                return None
            row = await projector.build_row(candidate)
            links = await projector.build_links(candidate)
            return PendingRow(row=row, external_ids=[candidate.external_id], links=links)

        for chunk in self._slices(candidates):
            pending = await map_bounded(chunk, prepare, ctx.transform_concurrency)
            await writer.write([row for row in pending if row is not None])
        result.error_details.extend(writer.error_details)
        writer.progress.finish()

    async def _prune_stale_tabular_answers(self, stage: StageDefinition) -> int:
        """
        Remove stored list-table answers whose revision is no longer the latest of their sheet.

        Only sheets with a known latest revision are considered. Their link
        rows and identity mappings go with them.
        """
        ctx = self.context
        latest = ctx.resolver.latest_revisions()
        if not latest:
            return 0

        stored = await self._store_call(ctx.store.fetch_tabular_answers, "load tabular answers")
        stale = [
            (answer_id, external_id)
            for answer_id, external_id, sheet_id, revision in stored
            if sheet_id in latest and revision != latest[sheet_id]
        ]
        if not stale:
            return 0

        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would remove {len(stale)} tabular answers of superseded sheet revisions")
            return len(stale)

        answer_ids = [answer_id for answer_id, _ in stale]
        for table in stage.link_tables:
            await self._store_call(
                lambda table=table: ctx.store.delete_where_in(table, "answer_id", answer_ids),
                f"clear {table.name} of stale answers"
            )
        await self._store_call(
            lambda: ctx.store.delete_where_in(stage.table, "id", answer_ids),
            "remove stale tabular answers"
        )
        await ctx.identity_map.forget([external_id for _, external_id in stale], EntityType.ANSWER)

        logger.info(f"Removed {len(stale)} tabular answers of superseded sheet revisions")
        return len(stale)

    def _slices(self, items: Sequence[Any]) -> List[Sequence[Any]]:
        size = self.context.batch_size
        return [items[start:start + size] for start in range(0, len(items), size)]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _start_audit(self) -> None:
        ctx = self.context
        if ctx.dry_run:
            return
        try:
            await ctx.store.start_run(MigrationRun(
                run_id=ctx.run_id,
                mode=ctx.mode,
                dry_run=ctx.dry_run,
                record_limit=ctx.record_limit,
                status=RunStatus.RUNNING,
                stages={}
            ))
            self._audit_enabled = True
        except LoadError as e:
            logger.error(f"Could not record migration run: {e}", extra={"error_context": e.to_dict()})

    async def _finish_audit(self, report: MigrationReport) -> None:
        if not self._audit_enabled:
            return
        try:
            await self.context.store.finish_run(
                run_id=report.run_id,
                status=report.status,
                stages=report.as_dict(),
                totals=report.totals(),
                error_message=report.error_message()
            )
        except LoadError as e:
            logger.error(f"Could not update migration run: {e}", extra={"error_context": e.to_dict()})
