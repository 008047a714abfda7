"""
Unit tests for the identity map cache over an in-memory store
"""

import pytest
from models.base import EntityType
from migration.identity_map import IdentityMap


class TestIdentityMap:
    """Test cache behaviour, preload and dry-run persistence"""

    @pytest.mark.asyncio
    async def test_get_after_set(self, identity_map, mapping_store):
        await identity_map.set("c1", "internal-1", EntityType.COMPANY)

        assert await identity_map.get("c1", EntityType.COMPANY) == "internal-1"
        assert mapping_store.entries["company"] == {"c1": "internal-1"}

    @pytest.mark.asyncio
    async def test_empty_ids_resolve_to_none(self, identity_map, mapping_store):
        assert await identity_map.get(None, EntityType.COMPANY) is None
        assert await identity_map.get("", EntityType.COMPANY) is None
        assert mapping_store.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_cache_miss_reads_through_once(self, identity_map, mapping_store):
        mapping_store.entries["user"] = {"u1": "internal-u1"}

        first = await identity_map.get("u1", EntityType.USER)
        second = await identity_map.get("u1", "user")

        # Assertions
        assert first == second == "internal-u1"
        assert mapping_store.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_preloaded_type_never_queries_again(self, identity_map, mapping_store):
        mapping_store.entries["tag"] = {"t1": "internal-t1"}

        loaded = await identity_map.preload_cache(EntityType.TAG)
        missing = await identity_map.get("t2", EntityType.TAG)
        await identity_map.preload_cache(EntityType.TAG)

        assert loaded == 1
        assert missing is None
        assert mapping_store.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_get_batch_preserves_order(self, identity_map, mapping_store):
        mapping_store.entries["question"] = {"q1": "i1", "q3": "i3"}

        result = await identity_map.get_batch(["q3", None, "q2", "q1", "q3"], EntityType.QUESTION)

        assert result == ["i3", None, None, "i1", "i3"]
        assert mapping_store.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_resolve_named_references(self, identity_map):
        await identity_map.set("s1", "sec-1", EntityType.SECTION)

        refs = await identity_map.resolve({
            "section_id": ("s1", EntityType.SECTION),
            "subsection_id": (None, EntityType.SUBSECTION),
            "created_by": ("u-missing", EntityType.USER),
        })

        assert refs == {"section_id": "sec-1", "subsection_id": None, "created_by": None}

    @pytest.mark.asyncio
    async def test_dry_run_keeps_entries_in_cache_only(self, mapping_store):
        identity_map = IdentityMap(mapping_store, persist=False)

        await identity_map.set_batch([("c1", "i1"), ("", "ignored")], EntityType.COMPANY)

        assert await identity_map.is_migrated("c1", EntityType.COMPANY) is True
        assert mapping_store.entries == {}

    @pytest.mark.asyncio
    async def test_clear_drops_store_and_cache(self, identity_map, mapping_store):
        await identity_map.set_batch([("a1", "x"), ("a2", "y")], EntityType.ANSWER)

        removed = await identity_map.clear(EntityType.ANSWER)

        # Assertions
        assert removed == 2
        assert await identity_map.get("a1", EntityType.ANSWER) is None
        assert identity_map.snapshot(EntityType.ANSWER) == {}
        assert "answer" not in mapping_store.entries
