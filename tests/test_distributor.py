"""Tests for cross-agent lesson distribution."""

import pytest

from tiered_memory import QueryFilter
from tiered_memory.distributor import lesson_id_for


async def _shared(store, agent_id=None):
    equals = {"memory_type": "shared_lesson"}
    if agent_id:
        equals["agent_id"] = agent_id
    return await store.query("Memory", QueryFilter(equals=equals))


class TestDistribute:
    @pytest.mark.asyncio
    async def test_reaches_every_agent(self, system, store):
        result = await system.distribute("Use timeouts", "Every outbound call needs a timeout", domain="infra")

        assert result["success"] is True
        assert result["distributed_to"] == 3
        assert result["total_agents"] == 3
        assert result["failed_agents"] == []

        lessons = await store.query("Lesson", QueryFilter())
        assert len(lessons) == 1
        assert lessons[0]["distributed"] is True
        assert lessons[0]["domain"] == "infra"

        copies = await _shared(store)
        assert {m["agent_id"] for m in copies} == {"main", "coder", "analyst"}
        for memory in copies:
            assert memory["tier"] == "working"
            assert memory["content"] == "[Lesson: Use timeouts] Every outbound call needs a timeout"
            assert memory["lesson_id"] == lessons[0]["id"]

    @pytest.mark.asyncio
    async def test_one_failing_agent(self, system, store):
        store.fail_when(
            lambda method, label, payload: method == "write" and label == "Memory" and payload["agent_id"] == "coder"
        )

        result = await system.distribute("Title", "Content")

        assert result["distributed_to"] == result["total_agents"] - 1
        assert result["failed_agents"] == ["coder"]
        assert len(await store.query("Lesson", QueryFilter())) == 1
        assert await _shared(store, "coder") == []

    @pytest.mark.asyncio
    async def test_redistribution_fills_gaps_without_duplicates(self, system, store):
        store.fail_when(
            lambda method, label, payload: method == "write" and label == "Memory" and payload["agent_id"] == "coder"
        )
        await system.distribute("Title", "Content")
        store.heal()

        result = await system.distribute("Title", "Content")

        assert result["distributed_to"] == 3
        assert len(await store.query("Lesson", QueryFilter())) == 1
        for agent_id in ("main", "coder", "analyst"):
            assert len(await _shared(store, agent_id)) == 1

    @pytest.mark.asyncio
    async def test_deleted_copy_is_not_restored(self, system, store):
        await system.distribute("Title", "Content")
        copy = (await _shared(store, "main"))[0]
        await system.delete("main", copy["id"])

        await system.distribute("Title", "Content")

        copies = await _shared(store, "main")
        assert len(copies) == 1
        assert copies[0]["deleted"] is True

    @pytest.mark.asyncio
    async def test_lesson_write_failure(self, system, store):
        store.fail_when(lambda method, label, payload: method == "write" and label == "Lesson")

        result = await system.distribute("Title", "Content")

        assert result["success"] is False
        assert result["distributed_to"] == 0
        assert await _shared(store) == []

    @pytest.mark.asyncio
    async def test_lesson_lookup_failure_leaves_record_untouched(self, system, store):
        await system.distribute("Title", "Content")
        before = (await store.query("Lesson", QueryFilter()))[0]
        store.fail_when(lambda method, label, payload: method == "query" and label == "Lesson")

        result = await system.distribute("Title", "Content")

        assert result["success"] is False
        assert result["error"] == "Lesson lookup failed"
        store.heal()
        assert (await store.query("Lesson", QueryFilter()))[0]["created_at"] == before["created_at"]

    @pytest.mark.asyncio
    async def test_redistribution_keeps_lesson_created_at(self, system, store):
        await system.distribute("Title", "Content")
        before = (await store.query("Lesson", QueryFilter()))[0]

        await system.distribute("Title", "Content", domain="ops")

        after = (await store.query("Lesson", QueryFilter()))[0]
        assert after["created_at"] == before["created_at"]
        assert after["domain"] == "general"

    def test_lesson_id_is_stable(self):
        assert lesson_id_for("a", "b") == lesson_id_for("a", "b")
        assert lesson_id_for("a", "b") != lesson_id_for("a", "c")
