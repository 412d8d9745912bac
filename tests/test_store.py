"""Tests for the query filter and the JSON graph store."""

from datetime import datetime, timedelta, timezone

import pytest

from tiered_memory import JsonGraphStore, QueryFilter


def _iso(hours_ago: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours_ago)).isoformat()


class TestQueryFilter:
    def test_equality_clauses(self):
        record = {"agent_id": "main", "tier": "working", "deleted": False}
        assert QueryFilter(equals={"agent_id": "main"}).matches(record)
        assert not QueryFilter(equals={"agent_id": "coder"}).matches(record)
        assert QueryFilter(not_equals={"deleted": True}).matches(record)
        assert not QueryFilter(not_equals={"tier": "working"}).matches(record)

    def test_membership_clauses(self):
        record = {"memory_type": "identity"}
        assert QueryFilter(any_of={"memory_type": ["identity", "fact"]}).matches(record)
        assert not QueryFilter(none_of={"memory_type": ["identity"]}).matches(record)

    def test_any_match_is_or_of_groups(self):
        query_filter = QueryFilter(any_match=[{"agent_id": "main"}, {"domain": "general"}])
        assert query_filter.matches({"agent_id": "main", "domain": "code"})
        assert query_filter.matches({"agent_id": "coder", "domain": "general"})
        assert not query_filter.matches({"agent_id": "coder", "domain": "code"})

    def test_missing_key_matches_none(self):
        assert QueryFilter(any_match=[{"agent_id": None}]).matches({"title": "x"})

    def test_time_bounds(self):
        record = {"updated_at": _iso(30)}
        assert QueryFilter(before={"updated_at": _iso(24)}).matches(record)
        assert not QueryFilter(after={"updated_at": _iso(24)}).matches(record)
        assert not QueryFilter(before={"updated_at": _iso(24)}).matches({})

    def test_order_and_limit(self):
        records = [{"id": str(i), "created_at": _iso(i)} for i in range(5)]
        newest = QueryFilter(order_by="created_at", descending=True, limit=2).apply(records)
        assert [r["id"] for r in newest] == ["0", "1"]
        oldest = QueryFilter(order_by="created_at").apply(records)
        assert oldest[0]["id"] == "4"


class TestJsonGraphStore:
    @pytest.mark.asyncio
    async def test_write_is_upsert(self, json_store):
        await json_store.write("Memory", {"id": "m1", "content": "a"})
        await json_store.write("Memory", {"id": "m1", "content": "b"})
        rows = await json_store.query("Memory", QueryFilter())
        assert rows == [{"id": "m1", "content": "b"}]

    @pytest.mark.asyncio
    async def test_write_requires_id(self, json_store):
        with pytest.raises(ValueError):
            await json_store.write("Memory", {"content": "no id"})

    @pytest.mark.asyncio
    async def test_update_patches_record(self, json_store):
        await json_store.write("Memory", {"id": "m1", "content": "a", "version": 1})
        updated = await json_store.update("Memory", "m1", {"version": 2})
        assert updated == {"id": "m1", "content": "a", "version": 2}

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, json_store):
        assert await json_store.update("Memory", "missing", {"x": 1}) is None

    @pytest.mark.asyncio
    async def test_labels_are_separate(self, json_store):
        await json_store.write("Memory", {"id": "same"})
        await json_store.write("Lesson", {"id": "same", "title": "t"})
        assert len(await json_store.query("Memory", QueryFilter())) == 1
        assert (await json_store.query("Lesson", QueryFilter()))[0]["title"] == "t"

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        first = JsonGraphStore(tmp_path)
        await first.write("Memory", {"id": "m1", "agent_id": "main"})
        second = JsonGraphStore(tmp_path)
        rows = await second.query("Memory", QueryFilter(equals={"agent_id": "main"}))
        assert [r["id"] for r in rows] == ["m1"]

    @pytest.mark.asyncio
    async def test_corrupted_file_raises(self, tmp_path):
        (tmp_path / "memory.json").write_text("{not json")
        store = JsonGraphStore(tmp_path)
        with pytest.raises(RuntimeError, match="Corrupted"):
            await store.query("Memory", QueryFilter())
