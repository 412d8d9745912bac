"""Explicit edits, soft deletes, promotion and age-based garbage collection.

Memories are never physically removed. Every destructive operation here
flips `deleted` (and `status`) and stamps `deleted_at`; nothing ever sets
`deleted` back to False.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import MEMORY_CONFIG, RESERVED_CORE_TYPES, AgentRegistry
from .models import (
    BOOT_EVENT_LABEL,
    FOLD_LABEL,
    LESSON_LABEL,
    MEMORY_LABEL,
    MEMORY_TIERS,
    ContextFold,
    Memory,
    Tier,
    utc_now,
)
from .store import QueryFilter, StoreAdapter
from .tiers import classify, is_reserved
from .utils import AuditLog, cutoff, estimate_tokens, generate_id, guarded

logger = logging.getLogger(__name__)


def _not_found(agent_id: str, memory_id: str) -> Dict[str, Any]:
    return {
        "success": False,
        "memory_id": memory_id,
        "agent_id": agent_id,
        "error": f"Memory {memory_id} not found for agent {agent_id}",
    }


def _store_error(agent_id: str, action: str) -> Dict[str, Any]:
    return {"success": False, "agent_id": agent_id, "error": f"Store unavailable during {action}"}


class MemoryEditor:
    """Write-side operations on an agent's memories."""

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
        self.cleanup_max_age_days = config["cleanup"]["max_age_days"]
        self.cleanup_keep_types = list(config["cleanup"]["keep_types"])

    async def _audit(self, agent_id: str, action: str, details: str = "") -> None:
        if self.audit_log:
            await self.audit_log.record(agent_id, action, details)

    async def _query(self, label: str, query_filter: QueryFilter, action: str) -> Optional[List[Dict[str, Any]]]:
        return await guarded(self.store.query(label, query_filter), None, self.timeout, action)

    async def _find(self, agent_id: str, memory_id: str) -> Tuple[Optional[Memory], bool]:
        """Look up a memory owned by agent_id, including deleted ones.

        Returns (memory, store_ok).
        """
        rows = await self._query(
            MEMORY_LABEL,
            QueryFilter(equals={"id": memory_id, "agent_id": agent_id}, limit=1),
            f"lookup of memory {memory_id}",
        )
        if rows is None:
            return None, False
        return (Memory(**rows[0]) if rows else None), True

    async def _soft_delete(self, memory_id: str) -> bool:
        patch = {"deleted": True, "status": "deleted", "deleted_at": utc_now()}
        result = await guarded(
            self.store.update(MEMORY_LABEL, memory_id, patch), None, self.timeout, f"soft-delete of {memory_id}"
        )
        return result is not None

    async def store(
        self,
        agent_id: str,
        content: str,
        memory_type: str = "learning",
        tier: Optional[Tier] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a new memory, placed by the tier classifier."""
        memory = Memory(
            id=generate_id("mem"),
            agent_id=agent_id,
            content=content,
            memory_type=memory_type,
            tier=classify(memory_type, tier),
            tags=tags or [],
        )
        written = await guarded(
            self.store.write(MEMORY_LABEL, memory.model_dump(mode="json")),
            None,
            self.timeout,
            f"store memory for {agent_id}",
        )
        if written is None:
            return _store_error(agent_id, "store")

        await self._audit(agent_id, "store", f"mem_id={memory.id} | type={memory_type} | tier={memory.tier}")
        return {
            "success": True,
            "memory_id": memory.id,
            "agent_id": agent_id,
            "memory_type": memory_type,
            "tier": memory.tier,
            "size_tokens": estimate_tokens(content),
        }

    async def edit(self, agent_id: str, memory_id: str, new_content: str) -> Dict[str, Any]:
        """Replace a memory's content and bump its version.

        Editing a deleted memory changes nothing and is not an error; the
        result reports `changed: False` with the memory's status.
        """
        memory, store_ok = await self._find(agent_id, memory_id)
        if not store_ok:
            return _store_error(agent_id, "edit")
        if memory is None:
            return _not_found(agent_id, memory_id)
        if memory.deleted:
            return {"success": True, "memory_id": memory_id, "changed": False, "status": memory.status}

        patch = {
            "content": new_content,
            "version": memory.version + 1,
            "updated_at": utc_now(),
            "tier": classify(memory.memory_type, memory.tier),
        }
        updated = await guarded(
            self.store.update(MEMORY_LABEL, memory_id, patch), None, self.timeout, f"edit of {memory_id}"
        )
        if updated is None:
            return _store_error(agent_id, "edit")

        await self._audit(agent_id, "edit", f"mem_id={memory_id} | version={patch['version']}")
        return {
            "success": True,
            "memory_id": memory_id,
            "changed": True,
            "version": patch["version"],
            "tier": patch["tier"],
        }

    async def delete(self, agent_id: str, memory_id: str) -> Dict[str, Any]:
        """Soft-delete a memory. Deleting twice is harmless."""
        memory, store_ok = await self._find(agent_id, memory_id)
        if not store_ok:
            return _store_error(agent_id, "delete")
        if memory is None:
            return _not_found(agent_id, memory_id)
        if memory.deleted:
            return {"success": True, "memory_id": memory_id, "already_deleted": True, "status": memory.status}

        if not await self._soft_delete(memory_id):
            return _store_error(agent_id, "delete")

        await self._audit(agent_id, "delete", f"mem_id={memory_id} | tier={memory.tier}")
        return {"success": True, "memory_id": memory_id, "already_deleted": False, "status": "deleted"}

    async def promote(self, agent_id: str, memory_id: str) -> Dict[str, Any]:
        """Move a memory into core, exempting it from age-based forgetting.

        The version is left alone. Deleted memories cannot be promoted.
        """
        memory, store_ok = await self._find(agent_id, memory_id)
        if not store_ok:
            return _store_error(agent_id, "promote")
        if memory is None:
            return _not_found(agent_id, memory_id)
        if memory.deleted:
            return {
                "success": False,
                "memory_id": memory_id,
                "error": f"Memory {memory_id} is {memory.status} and cannot be promoted",
            }

        to_tier = classify(memory.memory_type, "core")
        if memory.tier != to_tier:
            updated = await guarded(
                self.store.update(MEMORY_LABEL, memory_id, {"tier": to_tier}),
                None,
                self.timeout,
                f"promotion of {memory_id}",
            )
            if updated is None:
                return _store_error(agent_id, "promote")
            await self._audit(agent_id, "promote", f"mem_id={memory_id} | from={memory.tier} | to={to_tier}")

        return {"success": True, "memory_id": memory_id, "from_tier": memory.tier, "to_tier": to_tier}

    async def _expire(self, agent_id: str, query_filter: QueryFilter, keep_types: List[str], action: str) -> Optional[List[str]]:
        rows = await self._query(MEMORY_LABEL, query_filter, f"{action} scan for {agent_id}")
        if rows is None:
            return None

        # Reserved types and core are re-checked here even if the record is mismarked
        expired = [
            row["id"] for row in rows
            if not is_reserved(row.get("memory_type", ""))
            and row.get("memory_type") not in keep_types
            and row.get("tier") != "core"
            and not row.get("deleted")
        ]
        results = await asyncio.gather(*[self._soft_delete(memory_id) for memory_id in expired])
        return [memory_id for memory_id, ok in zip(expired, results) if ok]

    async def forget(self, agent_id: str, max_age_days: int) -> Dict[str, Any]:
        """Soft-delete live working memories not updated within max_age_days."""
        query_filter = QueryFilter(
            equals={"agent_id": agent_id, "tier": "working"},
            not_equals={"deleted": True},
            none_of={"memory_type": sorted(RESERVED_CORE_TYPES)},
            before={"updated_at": cutoff(days=max_age_days)},
        )
        forgotten = await self._expire(agent_id, query_filter, [], "forget")
        if forgotten is None:
            return {**_store_error(agent_id, "forget"), "forgotten": 0}

        logger.info("Forgot %d working memories for %s older than %d days", len(forgotten), agent_id, max_age_days)
        await self._audit(agent_id, "forget", f"max_age_days={max_age_days} | forgotten={len(forgotten)}")
        return {"success": True, "agent_id": agent_id, "forgotten": len(forgotten), "max_age_days": max_age_days}

    async def cleanup(
        self,
        agent_id: str,
        max_age_days: Optional[int] = None,
        keep_types: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Soft-delete stale non-core memories whose type is not in keep_types.

        Reserved core types are always kept in addition to keep_types.
        """
        max_age = max_age_days if max_age_days is not None else self.cleanup_max_age_days
        keep = list(keep_types) if keep_types is not None else list(self.cleanup_keep_types)
        query_filter = QueryFilter(
            equals={"agent_id": agent_id},
            not_equals={"deleted": True, "tier": "core"},
            none_of={"memory_type": sorted(set(keep) | RESERVED_CORE_TYPES)},
            before={"updated_at": cutoff(days=max_age)},
        )
        deleted = await self._expire(agent_id, query_filter, keep, "cleanup")
        if deleted is None:
            return {**_store_error(agent_id, "cleanup"), "deleted": 0}

        logger.info("Cleanup deleted %d memories for %s", len(deleted), agent_id)
        await self._audit(agent_id, "cleanup", f"max_age_days={max_age} | deleted={len(deleted)}")
        return {
            "success": True,
            "agent_id": agent_id,
            "deleted": len(deleted),
            "max_age_days": max_age,
            "preserved_types": keep,
            "sample_deleted_ids": deleted[:5],
        }

    async def cleanup_all(
        self,
        max_age_days: Optional[int] = None,
        keep_types: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Run cleanup for every agent in the registry."""
        agent_ids = self.registry.agent_ids()
        results = await asyncio.gather(*[
            self.cleanup(agent_id, max_age_days, keep_types) for agent_id in agent_ids
        ])
        return {
            "success": all(r["success"] for r in results),
            "agents_processed": len(agent_ids),
            "total_deleted": sum(r.get("deleted", 0) for r in results),
            "results": list(results),
        }

    async def store_context_fold(self, agent_id: str, summary: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Persist a folded session summary for later boots."""
        fold = ContextFold(id=generate_id("fold"), agent_id=agent_id, summary=summary, session_id=session_id)
        written = await guarded(
            self.store.write(FOLD_LABEL, fold.model_dump(mode="json")),
            None,
            self.timeout,
            f"context fold for {agent_id}",
        )
        if written is None:
            return _store_error(agent_id, "store_context_fold")

        await self._audit(agent_id, "store_context_fold", f"fold_id={fold.id}")
        return {"success": True, "fold_id": fold.id, "agent_id": agent_id, "size_tokens": estimate_tokens(summary)}

    async def audit_memories(self, agent_id: str, include_deleted: bool = True) -> Dict[str, Any]:
        """List an agent's memories, soft-deleted ones included by default."""
        query_filter = QueryFilter(equals={"agent_id": agent_id}, order_by="created_at")
        if not include_deleted:
            query_filter.not_equals["deleted"] = True
        rows = await self._query(MEMORY_LABEL, query_filter, f"audit query for {agent_id}")
        if rows is None:
            return {**_store_error(agent_id, "audit"), "memories": []}
        return {"success": True, "agent_id": agent_id, "count": len(rows), "memories": rows}

    async def status(self, agent_id: str) -> Dict[str, Any]:
        """Tier counts plus last-boot metadata for an agent."""
        memories, lessons, folds, boots = await asyncio.gather(
            self._query(MEMORY_LABEL, QueryFilter(equals={"agent_id": agent_id}), "status memories"),
            self._query(
                LESSON_LABEL,
                QueryFilter(any_match=[{"agent_id": agent_id}, {"agent_id": None}]),
                "status lessons",
            ),
            self._query(FOLD_LABEL, QueryFilter(equals={"agent_id": agent_id}), "status folds"),
            self._query(
                BOOT_EVENT_LABEL,
                QueryFilter(equals={"agent_id": agent_id}, order_by="last_boot_at", descending=True),
                "status boot events",
            ),
        )

        status: Dict[str, Any] = {"agent_id": agent_id, "success": memories is not None}
        if memories is None:
            status["error"] = "Store unavailable during status"
            memories = []

        live = [m for m in memories if not m.get("deleted")]
        status["tiers"] = {tier: sum(1 for m in live if m.get("tier") == tier) for tier in MEMORY_TIERS}
        status["memory_count"] = len(live)
        status["deleted_count"] = len(memories) - len(live)
        status["tokens"] = sum(estimate_tokens(m.get("content")) for m in live)
        status["lesson_count"] = len(lessons or [])
        status["fold_count"] = len(folds or [])

        boots = boots or []
        status["last_boot"] = boots[0].get("last_boot_at") if boots else None
        status["boot_count"] = sum(b.get("boot_count", 0) for b in boots)
        return status
