"""Consolidation of aging working memories into archival summaries.

Consolidation workflow:
1. Finish any earlier run whose originals were not all soft-deleted
2. Select live working memories older than the age threshold, oldest first
3. Compress their content with the summarizer (or truncate on failure)
4. Create one archival memory that records where it came from
5. Soft-delete the originals, pointing each at the archival record

An original listed in an archival record's `consolidated_from` is never
selected again. If step 5 fails or the process stops before it, the next
run points the leftover originals at the record that already lists them.
Runs for the same agent are serialized.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import MEMORY_CONFIG, RESERVED_CORE_TYPES
from .models import MEMORY_LABEL, Memory, utc_now
from .store import QueryFilter, StoreAdapter
from .summarizer import Summarizer, truncate_summary
from .tiers import classify, is_reserved
from .utils import AuditLog, cutoff, generate_id, guarded

logger = logging.getLogger(__name__)

CONSOLIDATED_TYPE = "consolidated"


class Consolidator:
    """Compresses an agent's aging working memories into archival records."""

    def __init__(
        self,
        store: StoreAdapter,
        summarizer: Optional[Summarizer] = None,
        audit_log: Optional[AuditLog] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.summarizer = summarizer
        self.audit_log = audit_log
        config = config or MEMORY_CONFIG
        self.min_age_hours = config["consolidation"]["min_age_hours"]
        self.target_tokens = config["consolidation"]["target_tokens"]
        self.store_timeout = config["timeouts"]["store_seconds"]
        self.summarizer_timeout = config["timeouts"]["summarizer_seconds"]
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def consolidate(self, agent_id: str) -> Dict[str, Any]:
        """Run one consolidation pass for an agent.

        Never raises. Any failure is logged and reported as nothing
        consolidated, with the reason under `error`.

        Returns:
            Dict with consolidated_count, archival_created and, when a record
            was created, archival_id, summary and used_fallback. Originals
            finished on behalf of an earlier run are counted under
            `recovered` as well as in consolidated_count.
        """
        try:
            async with self._locks[agent_id]:
                return await self._consolidate(agent_id)
        except Exception as e:
            logger.exception("Consolidation failed for %s", agent_id)
            return {"consolidated_count": 0, "archival_created": False, "error": str(e)}

    async def claimed_sources(self, agent_id: str) -> Dict[str, str]:
        """Map every id listed in an archival record's provenance to that record."""
        rows = await asyncio.wait_for(
            self.store.query(
                MEMORY_LABEL,
                QueryFilter(equals={"agent_id": agent_id, "memory_type": CONSOLIDATED_TYPE}, order_by="created_at"),
            ),
            timeout=self.store_timeout,
        )
        claimed: Dict[str, str] = {}
        for row in rows:
            for source_id in row.get("consolidated_from") or []:
                claimed.setdefault(source_id, row["id"])
        return claimed

    async def select_candidates(self, agent_id: str, exclude: Optional[Set[str]] = None) -> List[Memory]:
        query_filter = QueryFilter(
            equals={"agent_id": agent_id, "tier": "working"},
            not_equals={"deleted": True},
            none_of={"memory_type": sorted(RESERVED_CORE_TYPES)},
            before={"updated_at": cutoff(hours=self.min_age_hours)},
            order_by="updated_at",
        )
        if exclude:
            query_filter.none_of["id"] = sorted(exclude)
        rows = await asyncio.wait_for(
            self.store.query(MEMORY_LABEL, query_filter), timeout=self.store_timeout
        )
        return [Memory(**row) for row in rows if not is_reserved(row.get("memory_type", ""))]

    async def _consolidate(self, agent_id: str) -> Dict[str, Any]:
        claimed = await self.claimed_sources(agent_id)
        recovered, failed = await self._finish_claimed(agent_id, claimed)

        originals = await self.select_candidates(agent_id, exclude=set(claimed))
        if not originals:
            return self._result(agent_id, recovered, recovered, failed)

        text = "\n".join(f"[{m.memory_type}] {m.content}" for m in originals)
        summary, used_fallback = await self._summarize(text, len(originals))

        tags: List[str] = []
        for memory in originals:
            tags.extend(tag for tag in memory.tags if tag not in tags)

        archival = Memory(
            id=generate_id("mem"),
            agent_id=agent_id,
            content=summary,
            memory_type=CONSOLIDATED_TYPE,
            tier=classify(CONSOLIDATED_TYPE, "archival"),
            tags=tags[:20],
            consolidated_from=[m.id for m in originals],
        )
        await asyncio.wait_for(
            self.store.write(MEMORY_LABEL, archival.model_dump(mode="json")),
            timeout=self.store_timeout,
        )

        fresh_failed = await self._mark_consolidated({m.id: archival.id for m in originals})
        failed.extend(fresh_failed)

        if self.audit_log:
            await self.audit_log.record(
                agent_id,
                "consolidate",
                f"archival={archival.id} | sources={len(originals)} | fallback={used_fallback} | failed={len(fresh_failed)}",
            )
        logger.info(
            "Consolidated %d memories for %s into %s", len(originals) - len(fresh_failed), agent_id, archival.id
        )

        result = self._result(agent_id, recovered + len(originals) - len(fresh_failed), recovered, failed)
        result.update({
            "archival_created": True,
            "archival_id": archival.id,
            "summary": summary,
            "used_fallback": used_fallback,
        })
        return result

    async def _finish_claimed(self, agent_id: str, claimed: Dict[str, str]) -> Tuple[int, List[str]]:
        """Soft-delete originals that an archival record lists but that are still live."""
        if not claimed:
            return 0, []
        rows = await asyncio.wait_for(
            self.store.query(
                MEMORY_LABEL,
                QueryFilter(
                    equals={"agent_id": agent_id},
                    not_equals={"deleted": True},
                    any_of={"id": sorted(claimed)},
                ),
            ),
            timeout=self.store_timeout,
        )
        if not rows:
            return 0, []

        targets = {row["id"]: claimed[row["id"]] for row in rows}
        failed = await self._mark_consolidated(targets)
        recovered = len(targets) - len(failed)
        if recovered:
            logger.info("Finished %d interrupted consolidations for %s", recovered, agent_id)
            if self.audit_log:
                await self.audit_log.record(
                    agent_id, "consolidate", f"recovered={recovered} | failed={len(failed)}"
                )
        return recovered, failed

    async def _mark_consolidated(self, targets: Dict[str, str]) -> List[str]:
        """Point each original at its archival record. Returns the ids that failed."""
        deleted_at = utc_now()
        memory_ids = list(targets)
        results = await asyncio.gather(*[
            guarded(
                self.store.update(
                    MEMORY_LABEL,
                    memory_id,
                    {
                        "tier": "archival",
                        "status": "consolidated",
                        "deleted": True,
                        "deleted_at": deleted_at,
                        "consolidated_to": targets[memory_id],
                    },
                ),
                None,
                self.store_timeout,
                f"soft-delete of consolidated memory {memory_id}",
            )
            for memory_id in memory_ids
        ])
        return [memory_id for memory_id, result in zip(memory_ids, results) if result is None]

    @staticmethod
    def _result(agent_id: str, consolidated: int, recovered: int, failed: List[str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {"consolidated_count": consolidated, "archival_created": False}
        if recovered:
            result["recovered"] = recovered
        if failed:
            logger.warning("%d consolidated memories for %s are still live", len(failed), agent_id)
            result["failed_ids"] = failed
            result["error"] = f"{len(failed)} originals could not be soft-deleted"
        return result

    async def _summarize(self, text: str, source_count: int) -> Tuple[str, bool]:
        """Compress text, falling back to truncation. Returns (summary, used_fallback)."""
        if self.summarizer is not None:
            try:
                summary = await asyncio.wait_for(
                    self.summarizer.summarize(text, self.target_tokens, preserve_facts=True),
                    timeout=self.summarizer_timeout,
                )
                if summary and summary.strip():
                    return summary.strip(), False
                logger.warning("Summarizer returned nothing; truncating instead")
            except asyncio.TimeoutError:
                logger.warning("Summarizer timed out after %.1fs; truncating instead", self.summarizer_timeout)
            except Exception as e:
                logger.warning("Summarizer failed: %s; truncating instead", e)
        return truncate_summary(text, self.target_tokens, source_count), True


class ConsolidationQueue:
    """Background work queue for consolidation requests.

    A single worker drains agent ids one at a time. Pending ids are
    de-duplicated, and a run that reports an error is retried with
    exponential backoff up to `max_attempts`.
    """

    def __init__(self, consolidator: Consolidator, config: Optional[Dict[str, Any]] = None):
        self.consolidator = consolidator
        config = config or MEMORY_CONFIG
        self.max_attempts = config["consolidation"]["max_attempts"]
        self.backoff_seconds = config["consolidation"]["backoff_seconds"]
        self.max_backoff_seconds = config["consolidation"]["max_backoff_seconds"]
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Set[str] = set()
        self._worker: Optional[asyncio.Task] = None

    def submit(self, agent_id: str) -> bool:
        """Schedule consolidation for an agent. Returns False if already pending."""
        self._ensure_worker()
        if agent_id in self._pending:
            return False
        self._pending.add(agent_id)
        self._queue.put_nowait(agent_id)
        return True

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            agent_id = await self._queue.get()
            self._pending.discard(agent_id)
            try:
                await self._process(agent_id)
            except Exception:
                logger.exception("Consolidation worker failed for %s", agent_id)
            finally:
                self._queue.task_done()

    async def _process(self, agent_id: str) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for attempt in range(1, self.max_attempts + 1):
            result = await self.consolidator.consolidate(agent_id)
            if "error" not in result:
                break
            if attempt < self.max_attempts:
                delay = min(self.backoff_seconds * 2 ** (attempt - 1), self.max_backoff_seconds)
                logger.warning(
                    "Consolidation attempt %d for %s failed: %s; retrying in %.1fs",
                    attempt, agent_id, result["error"], delay,
                )
                await asyncio.sleep(delay)
            else:
                logger.error("Consolidation for %s gave up after %d attempts", agent_id, attempt)
        self.last_results[agent_id] = result
        return result

    async def join(self) -> None:
        """Wait until every submitted agent has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
