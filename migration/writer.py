"""
Chunked writes into the target store with row-level failure isolation.

A chunk is written as one upsert. If the store rejects it, the chunk is
retried one row at a time so that only the offending rows are lost; each is
logged and counted. Connection failures are retried under the write
RetryPolicy and become StoreUnavailable once the policy gives up.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import Table
from migration.identity_map import IdentityMap
from migration.retry import RetryPolicy
from migration.store import TargetStore
from core.exceptions import (
    BatchWriteError,
    RowWriteError,
    StoreTransientError,
    StoreUnavailable
)
import logging

logger = logging.getLogger(__name__)


@dataclass
class LinkRows:
    """
    Link-table rows written after their parent; parent_column gets the stored parent id.

    With replace set, the parent's existing rows in the table are deleted
    first, so an empty list clears them.
    """
    table: Table
    parent_column: str
    rows: List[Dict[str, Any]]
    replace: bool = False


@dataclass
class PendingRow:
    """
    One transformed row plus the external ids that should map to it.

    Most entities map a single external id; a composite sheet maps every
    revision id to the one stored row.
    """
    row: Dict[str, Any]
    external_ids: Sequence[str]
    links: List[LinkRows] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.row["external_id"]


@dataclass
class StageStats:
    migrated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.migrated + self.skipped + self.failed

    def as_dict(self) -> Dict[str, int]:
        return {"migrated": self.migrated, "skipped": self.skipped, "failed": self.failed}


class ProgressTracker:
    """
    Throughput and ETA for one stage.

    throughput = processed / elapsed, eta = remaining / throughput.
    """

    def __init__(
        self,
        label: str,
        stats: StageStats,
        total: Optional[int] = None,
        every_batches: int = 10,
        clock: Callable[[], float] = time.monotonic
    ):
        self.label = label
        self.stats = stats
        self.total = total
        self.every_batches = max(1, every_batches)
        self._clock = clock
        self._started = clock()
        self.batches = 0

    @property
    def elapsed(self) -> float:
        return max(self._clock() - self._started, 1e-9)

    @property
    def throughput(self) -> float:
        return self.stats.processed / self.elapsed

    @property
    def eta_seconds(self) -> Optional[float]:
        if self.total is None:
            return None
        remaining = max(self.total - self.stats.processed, 0)
        if remaining == 0:
            return 0.0
        if self.throughput <= 0:
            return None
        return remaining / self.throughput

    def line(self) -> str:
        total = f"/{self.total}" if self.total is not None else ""
        eta = self.eta_seconds
        eta_text = f"{eta:.0f}s" if eta is not None else "unknown"
        return (
            f"[{self.label}] {self.stats.processed}{total} processed "
            f"(migrated={self.stats.migrated}, skipped={self.stats.skipped}, failed={self.stats.failed}) "
            f"{self.throughput:.1f} rows/s, ETA {eta_text}"
        )

    def batch_done(self) -> None:
        self.batches += 1
        if self.batches % self.every_batches == 0:
            logger.info(self.line())

    def finish(self) -> None:
        logger.info(f"{self.line()} in {self.elapsed:.1f}s")


class BatchWriter:
    """
    Write PendingRows in fixed-size chunks.

    Attributes:
        table: Target table
        conflict_columns: Columns the upsert is keyed on
        batch_size: Rows per chunk
        dry_run: Count and cache ids without touching the store
    """

    def __init__(
        self,
        store: TargetStore,
        identity_map: IdentityMap,
        entity_type,
        table: Table,
        conflict_columns: Sequence[str],
        stats: StageStats,
        retry_policy: RetryPolicy,
        batch_size: int = 500,
        dry_run: bool = False,
        progress: Optional[ProgressTracker] = None
    ):
        self.store = store
        self.identity_map = identity_map
        self.entity_type = entity_type
        self.table = table
        self.conflict_columns = list(conflict_columns)
        self.stats = stats
        self.retry_policy = retry_policy
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.progress = progress
        self.error_details: List[Dict[str, Any]] = []

    async def write(self, pending: Sequence[PendingRow]) -> None:
        for start in range(0, len(pending), self.batch_size):
            await self._write_chunk(list(pending[start:start + self.batch_size]))
            if self.progress:
                self.progress.batch_done()

    async def _write_chunk(self, chunk: List[PendingRow]) -> None:
        if not chunk:
            return

        if self.dry_run:
            await self._record(chunk, [(p.row["id"], p.key) for p in chunk])
            return

        try:
            stored = await self._upsert([p.row for p in chunk])
        except BatchWriteError as e:
            logger.warning(
                f"Chunk of {len(chunk)} {self.table.name} rows rejected; retrying row by row: {e.message}"
            )
            await self._write_one_by_one(chunk)
            return

        await self._record(chunk, stored)

    async def _upsert(self, rows: List[Dict[str, Any]]) -> List[Tuple[str, str]]:
        try:
            return await self.retry_policy.call(
                lambda: self.store.upsert_rows(self.table, rows, self.conflict_columns),
                retry_on=(StoreTransientError,),
                description=f"Write {len(rows)} {self.table.name} rows"
            )
        except StoreTransientError as e:
            raise StoreUnavailable(
                f"Target store unavailable while writing {self.table.name}",
                context={"table_name": self.table.name, "attempts": self.retry_policy.max_attempts},
                original_exception=e
            )

    async def _write_one_by_one(self, chunk: List[PendingRow]) -> None:
        for pending in chunk:
            try:
                stored = await self._upsert([pending.row])
            except BatchWriteError as e:
                self.stats.failed += 1
                error = RowWriteError(
                    f"Row rejected by {self.table.name}",
                    context={
                        "table_name": self.table.name,
                        "external_id": pending.key,
                        "constraint_name": e.context.get("constraint_name")
                    },
                    original_exception=e.original_exception
                )
                self.error_details.append(error.to_dict())
                logger.error(str(error), extra={"error_context": error.context})
                continue

            await self._record([pending], stored)

    async def _record(self, chunk: List[PendingRow], stored: List[Tuple[str, str]]) -> None:
        """Map external ids to stored ids with one batched write, then write links"""
        stored_ids = {external_id: internal_id for internal_id, external_id in stored}

        entries = []
        links: Dict[str, LinkRows] = {}
        replaced: Dict[str, List[str]] = {}
        for pending in chunk:
            internal_id = stored_ids.get(pending.key)
            if internal_id is None:
                self.stats.skipped += 1
                continue

            self.stats.migrated += 1
            entries.extend((external_id, internal_id) for external_id in pending.external_ids)
            for link in pending.links:
                target = links.setdefault(
                    link.table.name, LinkRows(link.table, link.parent_column, [], link.replace)
                )
                target.rows.extend({**row, link.parent_column: internal_id} for row in link.rows)
                if link.replace:
                    replaced.setdefault(link.table.name, []).append(internal_id)

        await self.identity_map.set_batch(entries, self.entity_type)

        if not self.dry_run:
            for name, link in links.items():
                if name in replaced:
                    await self._clear_links(link, replaced[name])
                await self._write_links(link)

    async def _clear_links(self, link: LinkRows, parent_ids: List[str]) -> None:
        try:
            await self.retry_policy.call(
                lambda: self.store.delete_where_in(link.table, link.parent_column, parent_ids),
                retry_on=(StoreTransientError,),
                description=f"Clear {link.table.name} rows of {len(parent_ids)} parents"
            )
        except StoreTransientError as e:
            raise StoreUnavailable(
                f"Target store unavailable while clearing {link.table.name}",
                context={"table_name": link.table.name},
                original_exception=e
            )
        except BatchWriteError as e:
            logger.warning(f"Could not clear {link.table.name} rows: {e.message}")

    async def _write_links(self, link: LinkRows) -> None:
        for start in range(0, len(link.rows), self.batch_size):
            rows = link.rows[start:start + self.batch_size]
            try:
                await self.retry_policy.call(
                    lambda: self.store.insert_links(link.table, rows),
                    retry_on=(StoreTransientError,),
                    description=f"Write {len(rows)} {link.table.name} rows"
                )
            except StoreTransientError as e:
                raise StoreUnavailable(
                    f"Target store unavailable while writing {link.table.name}",
                    context={"table_name": link.table.name},
                    original_exception=e
                )
            except BatchWriteError as e:
                logger.warning(f"Skipped {len(rows)} {link.table.name} rows: {e.message}")
