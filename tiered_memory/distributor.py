"""Cross-agent lesson distribution.

A lesson is stored once and then copied into every registered agent's
working tier as a `shared_lesson` memory. Each copy is keyed by
(agent, lesson), so distributing the same lesson again only fills in
agents that did not receive it the first time.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .config import MEMORY_CONFIG, AgentRegistry
from .models import LESSON_LABEL, MEMORY_LABEL, Lesson, Memory
from .store import QueryFilter, StoreAdapter
from .tiers import classify
from .utils import AuditLog, generate_content_hash, guarded

logger = logging.getLogger(__name__)

SHARED_LESSON_TYPE = "shared_lesson"


def lesson_id_for(title: str, content: str) -> str:
    return f"lesson_{generate_content_hash(title, content)[:12]}"


def shared_memory_id(agent_id: str, lesson_id: str) -> str:
    return f"mem_{generate_content_hash(agent_id, lesson_id)[:12]}"


def _lesson_failure(lesson_id: str, title: str, total_agents: int, error: str) -> Dict[str, Any]:
    return {
        "success": False,
        "lesson_id": lesson_id,
        "lesson": title,
        "distributed_to": 0,
        "total_agents": total_agents,
        "failed_agents": [],
        "error": error,
    }


class LessonDistributor:
    """Persists lessons and fans them out to the agent population."""

    def __init__(
        self,
        store: StoreAdapter,
        registry: AgentRegistry,
        audit_log: Optional[AuditLog] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.registry = registry
        self.audit_log = audit_log
        config = config or MEMORY_CONFIG
        self.timeout = config["timeouts"]["store_seconds"]

    async def distribute(
        self,
        title: str,
        content: str,
        domain: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store a lesson and copy it into every registered agent's memory.

        Per-agent failures are counted, never raised. The lesson record is
        written first and stands on its own even if some copies fail.

        Returns:
            Dict with success, lesson_id, lesson title, distributed_to,
            total_agents and the list of failed_agents.
        """
        lesson = Lesson(
            id=lesson_id_for(title, content),
            title=title,
            content=content,
            domain=domain or "general",
            source=source or "system",
            distributed=True,
        )
        agent_ids = self.registry.agent_ids()

        existing = await guarded(
            self.store.query(LESSON_LABEL, QueryFilter(equals={"id": lesson.id}, limit=1)),
            None,
            self.timeout,
            f"lookup of lesson {lesson.id}",
        )
        # An existing lesson keeps its original created_at
        if existing is None:
            return _lesson_failure(lesson.id, title, len(agent_ids), "Lesson lookup failed")
        if existing:
            lesson = Lesson(**{**existing[0], "distributed": True})

        written = await guarded(
            self.store.write(LESSON_LABEL, lesson.model_dump(mode="json")),
            None,
            self.timeout,
            f"write of lesson {lesson.id}",
        )
        if written is None:
            return _lesson_failure(lesson.id, title, len(agent_ids), "Lesson could not be stored")

        results = await asyncio.gather(*[
            guarded(self._deliver(agent_id, lesson), False, self.timeout, f"lesson delivery to {agent_id}")
            for agent_id in agent_ids
        ])
        failed = [agent_id for agent_id, ok in zip(agent_ids, results) if not ok]
        distributed_to = len(agent_ids) - len(failed)

        if failed:
            logger.warning("Lesson %s not delivered to %s", lesson.id, ", ".join(failed))
        if self.audit_log:
            await self.audit_log.record(
                "system",
                "distribute",
                f"lesson={lesson.id} | delivered={distributed_to}/{len(agent_ids)}",
            )

        return {
            "success": True,
            "lesson_id": lesson.id,
            "lesson": title,
            "distributed_to": distributed_to,
            "total_agents": len(agent_ids),
            "failed_agents": failed,
        }

    async def _deliver(self, agent_id: str, lesson: Lesson) -> bool:
        memory_id = shared_memory_id(agent_id, lesson.id)
        # Any existing copy counts as delivered, even a deleted one
        existing = await self.store.query(MEMORY_LABEL, QueryFilter(equals={"id": memory_id}, limit=1))
        if existing:
            return True

        memory = Memory(
            id=memory_id,
            agent_id=agent_id,
            content=f"[Lesson: {lesson.title}] {lesson.content}",
            memory_type=SHARED_LESSON_TYPE,
            tier=classify(SHARED_LESSON_TYPE, "working"),
            tags=[lesson.domain],
            lesson_id=lesson.id,
        )
        await self.store.write(MEMORY_LABEL, memory.model_dump(mode="json"))
        return True
