"""Tests for consolidation and the background consolidation queue."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from helpers import make_memory
from tiered_memory import ConsolidationQueue, Consolidator, QueryFilter


async def _seed(store, agent_id, count, age_hours, **fields):
    ids = []
    for i in range(count):
        record = make_memory(agent_id, f"note {i} for {agent_id}", age_hours=age_hours + i, **fields)
        await store.write("Memory", record)
        ids.append(record["id"])
    return ids


async def _memories(store, **equals):
    return await store.query("Memory", QueryFilter(equals=equals))


class TestConsolidate:
    @pytest.mark.asyncio
    async def test_old_working_memories_become_one_archival(self, system, store):
        old_ids = await _seed(store, "A", 12, age_hours=30)
        recent_ids = await _seed(store, "A", 3, age_hours=1)

        result = await system.consolidate("A")

        assert result["consolidated_count"] == 12
        assert result["archival_created"] is True

        archival = await _memories(store, agent_id="A", memory_type="consolidated")
        assert len(archival) == 1
        assert archival[0]["tier"] == "archival"
        assert sorted(archival[0]["consolidated_from"]) == sorted(old_ids)

        for memory_id in old_ids:
            original = (await _memories(store, id=memory_id))[0]
            assert original["deleted"] is True
            assert original["status"] == "consolidated"
            assert original["consolidated_to"] == archival[0]["id"]

        for memory_id in recent_ids:
            recent = (await _memories(store, id=memory_id))[0]
            assert recent["deleted"] is False
            assert recent["tier"] == "working"

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, system, store):
        await _seed(store, "A", 4, age_hours=30)

        first = await system.consolidate("A")
        second = await system.consolidate("A")

        assert first["archival_created"] is True
        assert second == {"consolidated_count": 0, "archival_created": False}

    @pytest.mark.asyncio
    async def test_nothing_to_consolidate(self, system, store):
        await _seed(store, "A", 2, age_hours=1)
        assert await system.consolidate("A") == {"consolidated_count": 0, "archival_created": False}

    @pytest.mark.asyncio
    async def test_provenance_closure(self, system, store):
        await _seed(store, "A", 3, age_hours=30)
        await system.consolidate("A")
        await _seed(store, "A", 2, age_hours=48)
        await system.consolidate("A")

        archival = await _memories(store, agent_id="A", tier="archival", memory_type="consolidated")
        assert len(archival) == 2
        for record in archival:
            for source_id in record["consolidated_from"]:
                source = (await _memories(store, id=source_id))[0]
                assert source["deleted"] is True
                assert source["consolidated_to"] == record["id"]

    @pytest.mark.asyncio
    async def test_reserved_types_and_other_agents_untouched(self, system, store):
        mismarked = make_memory("A", "I am A", memory_type="identity", tier="working", age_hours=50)
        core = make_memory("A", "I prefer short answers", memory_type="persona", tier="core", age_hours=50)
        other = make_memory("B", "B's note", age_hours=50)
        for record in (mismarked, core, other):
            await store.write("Memory", record)
        await _seed(store, "A", 2, age_hours=30)

        result = await system.consolidate("A")

        assert result["consolidated_count"] == 2
        for record in (mismarked, core, other):
            assert (await _memories(store, id=record["id"]))[0]["deleted"] is False

    @pytest.mark.asyncio
    async def test_uses_summarizer(self, store, fast_config):
        await _seed(store, "A", 3, age_hours=30)
        summarizer = AsyncMock()
        summarizer.summarize.return_value = "Condensed facts"
        consolidator = Consolidator(store, summarizer, config=fast_config)

        result = await consolidator.consolidate("A")

        assert result["summary"] == "Condensed facts"
        assert result["used_fallback"] is False
        summarizer.summarize.assert_awaited_once()
        args, kwargs = summarizer.summarize.call_args
        assert "[learning] note 0 for A" in args[0]
        assert args[1] == fast_config["consolidation"]["target_tokens"]
        assert kwargs == {"preserve_facts": True}

    @pytest.mark.asyncio
    async def test_summarizer_failure_falls_back_to_truncation(self, store, fast_config):
        for i in range(12):
            await store.write("Memory", make_memory("A", f"{i:02d} " + "x" * 300, age_hours=30 + i))
        summarizer = AsyncMock()
        summarizer.summarize.side_effect = RuntimeError("model unavailable")
        consolidator = Consolidator(store, summarizer, config=fast_config)

        result = await consolidator.consolidate("A")

        assert result["archival_created"] is True
        assert result["used_fallback"] is True
        assert result["summary"].endswith("[truncated consolidation of 12 memories]")
        assert result["summary"].startswith("[learning] 11 ")

    @pytest.mark.asyncio
    async def test_no_summarizer_keeps_short_text(self, system, store):
        await store.write("Memory", make_memory("A", "only note", age_hours=30))
        result = await system.consolidate("A")
        assert result["summary"] == "[learning] only note"
        assert result["used_fallback"] is True

    @pytest.mark.asyncio
    async def test_store_failure_reports_error(self, system, store):
        await _seed(store, "A", 3, age_hours=30)
        store.fail_when(lambda method, label, payload: method == "write" and label == "Memory")

        result = await system.consolidate("A")

        assert result["consolidated_count"] == 0
        assert result["archival_created"] is False
        assert "error" in result
        assert all(not m["deleted"] for m in await _memories(store, agent_id="A"))

    @pytest.mark.asyncio
    async def test_partial_soft_delete_is_finished_next_run(self, system, store):
        ids = await _seed(store, "A", 3, age_hours=30)
        store.fail_when(lambda method, label, payload: method == "update" and payload["id"] == ids[0])

        first = await system.consolidate("A")
        assert first["consolidated_count"] == 2
        assert first["failed_ids"] == [ids[0]]

        store.heal()
        second = await system.consolidate("A")
        assert second == {"consolidated_count": 1, "archival_created": False, "recovered": 1}

        archival = await _memories(store, agent_id="A", memory_type="consolidated")
        assert len(archival) == 1
        for memory_id in archival[0]["consolidated_from"]:
            original = (await _memories(store, id=memory_id))[0]
            assert original["deleted"] is True
            assert original["consolidated_to"] == archival[0]["id"]

    @pytest.mark.asyncio
    async def test_stop_after_archival_write_is_finished_next_run(self, system, store):
        ids = await _seed(store, "A", 2, age_hours=30)
        later = await _seed(store, "A", 1, age_hours=40)
        archival = make_memory("A", "summary", memory_type="consolidated", tier="archival", consolidated_from=ids)
        await store.write("Memory", archival)

        result = await system.consolidate("A")

        assert result["recovered"] == 2
        assert result["consolidated_count"] == 3
        for memory_id in ids:
            assert (await _memories(store, id=memory_id))[0]["consolidated_to"] == archival["id"]
        fresh = (await _memories(store, id=later[0]))[0]["consolidated_to"]
        assert fresh == result["archival_id"]
        assert fresh != archival["id"]

    @pytest.mark.asyncio
    async def test_concurrent_runs_for_one_agent_are_serialized(self, system, store):
        ids = await _seed(store, "A", 4, age_hours=30)

        results = await asyncio.gather(system.consolidate("A"), system.consolidate("A"))

        assert sorted(r["consolidated_count"] for r in results) == [0, 4]
        archival = await _memories(store, agent_id="A", memory_type="consolidated")
        assert len(archival) == 1
        assert sorted(archival[0]["consolidated_from"]) == sorted(ids)


class TestConsolidationQueue:
    @pytest.mark.asyncio
    async def test_retries_until_success(self, fast_config):
        consolidator = AsyncMock()
        consolidator.consolidate.side_effect = [
            {"consolidated_count": 0, "archival_created": False, "error": "store down"},
            {"consolidated_count": 3, "archival_created": True},
        ]
        queue = ConsolidationQueue(consolidator, fast_config)

        assert queue.submit("main") is True
        await queue.join()
        await queue.stop()

        assert consolidator.consolidate.await_count == 2
        assert queue.last_results["main"]["consolidated_count"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, fast_config):
        consolidator = AsyncMock()
        consolidator.consolidate.return_value = {"consolidated_count": 0, "archival_created": False, "error": "x"}
        queue = ConsolidationQueue(consolidator, fast_config)

        queue.submit("main")
        await queue.join()
        await queue.stop()

        assert consolidator.consolidate.await_count == fast_config["consolidation"]["max_attempts"]
        assert "error" in queue.last_results["main"]

    @pytest.mark.asyncio
    async def test_pending_agents_are_deduplicated(self, fast_config):
        consolidator = AsyncMock()
        consolidator.consolidate.return_value = {"consolidated_count": 0, "archival_created": False}
        queue = ConsolidationQueue(consolidator, fast_config)

        assert queue.submit("main") is True
        assert queue.submit("main") is False
        assert queue.submit("coder") is True
        await queue.join()
        await queue.stop()

        assert consolidator.consolidate.await_count == 2
