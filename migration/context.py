"""
Per-run migration context.

Everything a run mutates (identity map cache, resolver, counters) hangs off
one MigrationContext that is created at run start, passed to every stage
and transform, and closed at run end.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar
import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import Settings
from models.base import MigrationMode
from migration.identity_map import IdentityMap, SqlMappingStore
from migration.paginator import SourcePaginator
from migration.rate_limiter import RateLimiter
from migration.retry import RetryPolicy
from migration.revisions import RevisionResolver
from migration.store import TargetStore

T = TypeVar("T")
R = TypeVar("R")


async def map_bounded(items: Sequence[T], worker: Callable[[T], Awaitable[R]], limit: int) -> List[R]:
    """
    Run worker over items with a fixed pool of `limit` tasks; results keep item order.

    Only the pool's tasks exist at any time; items wait in a queue. The first
    exception cancels the pool and is re-raised.
    """
    if not items:
        return []

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))
    results: List[Optional[R]] = [None] * len(items)

    async def drain() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await worker(item)

    pool = [asyncio.ensure_future(drain()) for _ in range(max(1, min(limit, len(items))))]
    try:
        await asyncio.gather(*pool)
    except BaseException:
        for task in pool:
            task.cancel()
        await asyncio.gather(*pool, return_exceptions=True)
        raise
    return results


@dataclass
class MigrationContext:
    """State of one migration run"""

    settings: Settings
    mode: MigrationMode
    dry_run: bool
    store: TargetStore
    identity_map: IdentityMap
    paginator: SourcePaginator
    write_policy: RetryPolicy
    record_limit: Optional[int] = None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    resolver: RevisionResolver = field(default_factory=RevisionResolver)

    @classmethod
    def create(
        cls,
        settings: Settings,
        session_maker: async_sessionmaker,
        mode: MigrationMode = MigrationMode.INCREMENTAL,
        dry_run: bool = True,
        record_limit: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> "MigrationContext":
        """Wire the run's collaborators from settings"""
        write_policy = RetryPolicy.linear(settings.STORE_MAX_ATTEMPTS, settings.STORE_RETRY_BACKOFF)
        paginator = SourcePaginator(
            base_url=settings.SOURCE_API_URL,
            api_token=settings.SOURCE_API_TOKEN,
            rate_limiter=RateLimiter(settings.SOURCE_MIN_REQUEST_INTERVAL),
            retry_policy=RetryPolicy.linear(settings.SOURCE_MAX_ATTEMPTS, settings.SOURCE_RETRY_BACKOFF),
            page_size=settings.SOURCE_PAGE_SIZE,
            timeout=settings.SOURCE_TIMEOUT,
            client=http_client
        )
        mapping_store = SqlMappingStore(session_maker, retry_policy=write_policy)

        return cls(
            settings=settings,
            mode=mode,
            dry_run=dry_run,
            store=TargetStore(session_maker),
            identity_map=IdentityMap(mapping_store, persist=not dry_run),
            paginator=paginator,
            write_policy=write_policy,
            record_limit=record_limit,
        )

    @property
    def is_fresh(self) -> bool:
        return self.mode == MigrationMode.FRESH

    @property
    def batch_size(self) -> int:
        return self.settings.BATCH_SIZE

    @property
    def transform_concurrency(self) -> int:
        """Fresh runs transform in parallel (bounded by batch size); incremental runs one at a time"""
        if self.is_fresh:
            return max(1, min(self.settings.TRANSFORM_CONCURRENCY, self.batch_size))
        return 1

    async def close(self) -> None:
        self.identity_map.discard_cache()
        await self.paginator.aclose()
