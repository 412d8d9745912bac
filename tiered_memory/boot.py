"""Boot loader: reassembles an agent's working context at session start."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import MEMORY_CONFIG, AgentRegistry
from .consolidation import ConsolidationQueue
from .models import (
    AGENT_LABEL,
    BOOT_EVENT_LABEL,
    FOLD_LABEL,
    LESSON_LABEL,
    MEMORY_LABEL,
    BootEvent,
    BootSnapshot,
    ContextFold,
    Lesson,
    Memory,
    utc_now,
)
from .store import QueryFilter, StoreAdapter
from .summarizer import Rehydrator
from .utils import cutoff, estimate_tokens, guarded

logger = logging.getLogger(__name__)


class BootLoader:
    """Loads every section of an agent's memory concurrently.

    Each read is guarded on its own: a failed or slow section comes back
    empty and the rest of the snapshot is unaffected. `boot` never raises.
    """

    def __init__(
        self,
        store: StoreAdapter,
        registry: AgentRegistry,
        queue: Optional[ConsolidationQueue] = None,
        rehydrator: Optional[Rehydrator] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.registry = registry
        self.queue = queue
        self.rehydrator = rehydrator
        config = config or MEMORY_CONFIG
        self.window_days = config["boot"]["working_window_days"]
        self.limits = config["boot"]["limits"]
        self.store_timeout = config["timeouts"]["store_seconds"]
        self.rehydrate_timeout = config["timeouts"]["rehydrate_seconds"]
        self._event_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def boot(self, agent_id: str, quick: bool = False) -> BootSnapshot:
        limits = self.limits["quick" if quick else "full"]
        snapshot = BootSnapshot(agent_id=agent_id)

        sections = await asyncio.gather(
            self._read(self._core(agent_id), "core", snapshot, []),
            self._read(self._working(agent_id, limits["working"]), "working", snapshot, []),
            self._read(self._archival(agent_id, limits["archival"]), "archival", snapshot, []),
            self._read(self._lessons(agent_id, limits["lessons"]), "lessons", snapshot, []),
            self._read(self._folds(agent_id, limits["folds"]), "context_folds", snapshot, []),
            self._read(self._profile(agent_id), "profile", snapshot, None),
            self._rehydrate(agent_id),
        )
        (
            snapshot.core,
            snapshot.working,
            snapshot.archival,
            snapshot.lessons,
            snapshot.context_folds,
            snapshot.profile,
            snapshot.rehydrated,
        ) = sections
        snapshot.tokens_estimate = self.estimate(snapshot)

        # Reads are done, so the snapshot reflects pre-consolidation state
        if self.queue is not None:
            try:
                self.queue.submit(agent_id)
            except Exception as e:
                logger.warning("Could not schedule consolidation for %s: %s", agent_id, e)

        await guarded(self._log_boot_event(snapshot), None, self.store_timeout, f"boot event for {agent_id}")
        return snapshot

    async def _read(self, call, section: str, snapshot: BootSnapshot, fallback: Any) -> Any:
        sentinel = object()
        result = await guarded(call, sentinel, self.store_timeout, f"boot read '{section}' for {snapshot.agent_id}")
        if result is sentinel:
            snapshot.errors.append(section)
            return fallback
        return result

    async def _memories(self, query_filter: QueryFilter) -> List[Memory]:
        rows = await self.store.query(MEMORY_LABEL, query_filter)
        return [Memory(**row) for row in rows]

    async def _core(self, agent_id: str) -> List[Memory]:
        return await self._memories(QueryFilter(
            equals={"agent_id": agent_id, "tier": "core"},
            not_equals={"deleted": True},
            order_by="created_at",
        ))

    async def _working(self, agent_id: str, limit: int) -> List[Memory]:
        return await self._memories(QueryFilter(
            equals={"agent_id": agent_id, "tier": "working"},
            not_equals={"deleted": True},
            after={"updated_at": cutoff(days=self.window_days)},
            order_by="updated_at",
            descending=True,
            limit=limit,
        ))

    async def _archival(self, agent_id: str, limit: int) -> List[Memory]:
        return await self._memories(QueryFilter(
            equals={"agent_id": agent_id, "tier": "archival"},
            not_equals={"deleted": True},
            order_by="created_at",
            descending=True,
            limit=limit,
        ))

    async def _lessons(self, agent_id: str, limit: int) -> List[Lesson]:
        relevant = [{"agent_id": agent_id}, {"agent_id": None}, {"domain": "general"}]
        relevant.extend({"domain": domain} for domain in self.registry.domains_for(agent_id))
        rows = await self.store.query(LESSON_LABEL, QueryFilter(
            any_match=relevant,
            order_by="created_at",
            descending=True,
            limit=limit,
        ))
        return [Lesson(**row) for row in rows]

    async def _folds(self, agent_id: str, limit: int) -> List[ContextFold]:
        rows = await self.store.query(FOLD_LABEL, QueryFilter(
            equals={"agent_id": agent_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        ))
        return [ContextFold(**row) for row in rows]

    async def _profile(self, agent_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(AGENT_LABEL, QueryFilter(equals={"id": agent_id}, limit=1))
        if rows:
            return rows[0]
        profile = self.registry.get(agent_id)
        return profile.model_dump() if profile else None

    async def _rehydrate(self, agent_id: str) -> bool:
        if self.rehydrator is None:
            return False
        result = await guarded(
            self.rehydrator.rehydrate(agent_id), {}, self.rehydrate_timeout, f"rehydrate for {agent_id}"
        )
        return bool(result and (result.get("success") or result.get("rehydrated")))

    @staticmethod
    def estimate(snapshot: BootSnapshot) -> int:
        """Token estimate over every text field in the snapshot."""
        texts: List[Optional[str]] = []
        for memory in snapshot.core + snapshot.working + snapshot.archival:
            texts.append(memory.content)
        for lesson in snapshot.lessons:
            texts.extend([lesson.title, lesson.content])
        for fold in snapshot.context_folds:
            texts.append(fold.summary)
        if snapshot.profile:
            texts.append(snapshot.profile.get("persona"))
        return estimate_tokens("".join(text for text in texts if text))

    async def _log_boot_event(self, snapshot: BootSnapshot) -> None:
        date = datetime.now(timezone.utc).date().isoformat()
        event_id = f"{snapshot.agent_id}:{date}"
        stats = snapshot.stats()
        # One read-increment-write per event at a time
        async with self._event_locks[event_id]:
            rows = await self.store.query(BOOT_EVENT_LABEL, QueryFilter(equals={"id": event_id}, limit=1))
            boot_count = rows[0].get("boot_count", 0) if rows else 0
            event = BootEvent(
                id=event_id,
                agent_id=snapshot.agent_id,
                date=date,
                boot_count=boot_count + 1,
                last_boot_at=utc_now(),
                memories_loaded=stats["memories_loaded"],
                lessons_loaded=stats["lessons_loaded"],
                folds_loaded=stats["folds_loaded"],
                tokens_estimate=stats["tokens_estimate"],
            )
            await self.store.write(BOOT_EVENT_LABEL, event.model_dump(mode="json"))
