"""
Identity map: external record ids to internal ids.

The backing table persists across runs so that re-runs are idempotent; the
in-memory cache lives for one run and is preloaded once per entity type at
the start of the stage that needs it.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from models.mapping import IdMapping
from models.base import EntityType
from migration.retry import RetryPolicy
from migration.store import dialect_insert, translate_error
from core.exceptions import LoadError, StoreUnavailable, StoreTransientError
import logging

logger = logging.getLogger(__name__)

# Keeps IN (...) lists well under driver parameter limits
LOOKUP_CHUNK = 500

Reference = Tuple[Optional[str], EntityType]


def _type_key(entity_type) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)


class MappingStore(ABC):
    """Persistent storage for mapping entries"""

    @abstractmethod
    async def fetch(self, entity_type: str, external_ids: Sequence[str]) -> Dict[str, str]:
        """Return {external_id: internal_id} for the ids that are mapped"""
        pass

    @abstractmethod
    async def fetch_all(self, entity_type: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def upsert(self, entity_type: str, entries: Sequence[Tuple[str, str]]) -> None:
        pass

    @abstractmethod
    async def delete_type(self, entity_type: str) -> int:
        pass

    @abstractmethod
    async def delete(self, entity_type: str, external_ids: Sequence[str]) -> int:
        """Remove the mappings of the given external ids"""
        pass


class SqlMappingStore(MappingStore):
    """
    Mapping entries in the `migration_id_map` table.

    Any failure that survives the retry policy raises StoreUnavailable,
    which is fatal to the running stage.
    """

    def __init__(self, session_maker: async_sessionmaker, retry_policy: Optional[RetryPolicy] = None):
        self.session_maker = session_maker
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1)

    async def _run(self, operation, description: str):
        async def attempt():
            try:
                return await operation()
            except (SQLAlchemyError, OSError) as e:
                raise translate_error(e, {"table_name": IdMapping.__tablename__, "operation": description})

        try:
            return await self.retry_policy.call(attempt, retry_on=(StoreTransientError,), description=description)
        except LoadError as e:
            raise StoreUnavailable(
                f"Identity map store failed during {description}",
                context={"operation": description},
                original_exception=e
            )

    async def fetch(self, entity_type: str, external_ids: Sequence[str]) -> Dict[str, str]:
        found: Dict[str, str] = {}
        ids = list(dict.fromkeys(external_ids))

        async def op():
            async with self.session_maker() as session:
                for start in range(0, len(ids), LOOKUP_CHUNK):
                    chunk = ids[start:start + LOOKUP_CHUNK]
                    result = await session.execute(
                        select(IdMapping.external_id, IdMapping.internal_id).where(
                            IdMapping.entity_type == entity_type,
                            IdMapping.external_id.in_(chunk)
                        )
                    )
                    found.update({row[0]: row[1] for row in result.all()})
            return found

        if not ids:
            return found
        return await self._run(op, f"fetch {entity_type}")

    async def fetch_all(self, entity_type: str) -> Dict[str, str]:
        async def op():
            async with self.session_maker() as session:
                result = await session.execute(
                    select(IdMapping.external_id, IdMapping.internal_id).where(
                        IdMapping.entity_type == entity_type
                    )
                )
                return {row[0]: row[1] for row in result.all()}

        return await self._run(op, f"preload {entity_type}")

    async def upsert(self, entity_type: str, entries: Sequence[Tuple[str, str]]) -> None:
        if not entries:
            return

        async def op():
            now = datetime.now(timezone.utc)
            async with self.session_maker() as session:
                async with session.begin():
                    insert = dialect_insert(session.bind.dialect.name)
                    for start in range(0, len(entries), LOOKUP_CHUNK):
                        chunk = entries[start:start + LOOKUP_CHUNK]
                        stmt = insert(IdMapping).values([
                            {
                                "entity_type": entity_type,
                                "external_id": external_id,
                                "internal_id": internal_id,
                                "created_at": now
                            }
                            for external_id, internal_id in chunk
                        ])
                        stmt = stmt.on_conflict_do_update(
                            index_elements=["entity_type", "external_id"],
                            set_={"internal_id": stmt.excluded.internal_id}
                        )
                        await session.execute(stmt)

        await self._run(op, f"upsert {entity_type}")

    async def delete_type(self, entity_type: str) -> int:
        async def op():
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IdMapping).where(IdMapping.entity_type == entity_type)
                    )
                    return result.rowcount or 0

        return await self._run(op, f"delete {entity_type}")

    async def delete(self, entity_type: str, external_ids: Sequence[str]) -> int:
        ids = list(dict.fromkeys(external_ids))

        async def op():
            removed = 0
            async with self.session_maker() as session:
                async with session.begin():
                    for start in range(0, len(ids), LOOKUP_CHUNK):
                        result = await session.execute(
                            delete(IdMapping).where(
                                IdMapping.entity_type == entity_type,
                                IdMapping.external_id.in_(ids[start:start + LOOKUP_CHUNK])
                            )
                        )
                        removed += result.rowcount or 0
            return removed

        if not ids:
            return 0
        return await self._run(op, f"delete {len(ids)} {entity_type}")


class IdentityMap:
    """
    Translate external ids to internal ids for one run.

    Guarantees:
    - get(x, t) returns y immediately after set(x, y, t)
    - Empty or missing external ids resolve to None
    - When persist is False (dry-run) entries live only in the cache
    """

    def __init__(self, store: MappingStore, persist: bool = True):
        self.store = store
        self.persist = persist
        self._cache: Dict[str, Dict[str, str]] = {}
        self._preloaded: set = set()

    def _bucket(self, entity_type) -> Dict[str, str]:
        return self._cache.setdefault(_type_key(entity_type), {})

    async def preload_cache(self, entity_type) -> int:
        """Load every mapping of an entity type into the cache (once per run)"""
        key = _type_key(entity_type)
        if key in self._preloaded:
            return len(self._bucket(key))

        entries = await self.store.fetch_all(key)
        bucket = self._bucket(key)
        for external_id, internal_id in entries.items():
            bucket.setdefault(external_id, internal_id)
        self._preloaded.add(key)

        logger.info(f"Preloaded {len(entries)} {key} mappings")
        return len(bucket)

    def cached(self, external_id: Optional[str], entity_type) -> Optional[str]:
        if not external_id:
            return None
        return self._bucket(entity_type).get(external_id)

    def snapshot(self, entity_type) -> Dict[str, str]:
        """Copy of the cached entries of one entity type"""
        return dict(self._bucket(entity_type))

    async def get(self, external_id: Optional[str], entity_type) -> Optional[str]:
        if not external_id:
            return None

        key = _type_key(entity_type)
        bucket = self._bucket(key)
        if external_id in bucket:
            return bucket[external_id]
        if key in self._preloaded:
            return None

        found = await self.store.fetch(key, [external_id])
        internal_id = found.get(external_id)
        if internal_id is not None:
            bucket[external_id] = internal_id
        return internal_id

    async def get_batch(self, external_ids: Sequence[Optional[str]], entity_type) -> List[Optional[str]]:
        """Resolve many ids of one type; cache misses go to the store in one query"""
        key = _type_key(entity_type)
        bucket = self._bucket(key)
        missing = [x for x in dict.fromkeys(external_ids) if x and x not in bucket]

        if missing and key not in self._preloaded:
            found = await self.store.fetch(key, missing)
            bucket.update(found)

        return [bucket.get(x) if x else None for x in external_ids]

    async def resolve(self, references: Mapping[str, Reference]) -> Dict[str, Optional[str]]:
        """
        Resolve the foreign keys of one record concurrently.

        Args:
            references: {name: (external_id, entity_type)}

        Returns:
            {name: internal_id or None}
        """
        names = list(references)
        results = await asyncio.gather(
            *(self.get(references[name][0], references[name][1]) for name in names)
        )
        return dict(zip(names, results))

    async def set(self, external_id: str, internal_id: str, entity_type) -> None:
        await self.set_batch([(external_id, internal_id)], entity_type)

    async def set_batch(self, entries: Iterable[Tuple[str, str]], entity_type) -> None:
        """Upsert entries into the store (unless dry-run) and the cache"""
        key = _type_key(entity_type)
        entries = [(x, y) for x, y in entries if x]
        if not entries:
            return

        if self.persist:
            await self.store.upsert(key, entries)

        bucket = self._bucket(key)
        for external_id, internal_id in entries:
            bucket[external_id] = internal_id

    async def is_migrated(self, external_id: Optional[str], entity_type) -> bool:
        return await self.get(external_id, entity_type) is not None

    async def clear(self, entity_type) -> int:
        """Drop one entity type's mappings (fresh mode)"""
        key = _type_key(entity_type)
        removed = 0
        if self.persist:
            removed = await self.store.delete_type(key)
        self._cache[key] = {}
        self._preloaded.add(key)
        logger.info(f"Cleared {removed} {key} mappings")
        return removed

    async def forget(self, external_ids: Sequence[str], entity_type) -> int:
        """Drop specific mappings from the cache and (unless dry-run) the store"""
        key = _type_key(entity_type)
        removed = 0
        if self.persist:
            removed = await self.store.delete(key, external_ids)
        bucket = self._bucket(key)
        for external_id in external_ids:
            bucket.pop(external_id, None)
        return removed

    def discard_cache(self) -> None:
        self._cache.clear()
        self._preloaded.clear()
