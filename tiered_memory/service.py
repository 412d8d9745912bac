"""MemorySystem: wires the store, classifier, loader, consolidator, editor
and distributor together behind one object.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .boot import BootLoader
from .config import MEMORY_BASE_PATH, MEMORY_CONFIG, AgentRegistry, load_agent_registry
from .consolidation import Consolidator, ConsolidationQueue
from .distributor import LessonDistributor
from .editor import MemoryEditor
from .models import Tier
from .store import JsonGraphStore, StoreAdapter
from .summarizer import Rehydrator, Summarizer
from .utils import AuditLog

logger = logging.getLogger(__name__)


class MemorySystem:
    """Public entry point for every memory operation.

    No method raises; each returns a result dict (or a BootSnapshot) that
    carries an `error` field when something went wrong.
    """

    def __init__(
        self,
        store: StoreAdapter,
        registry: AgentRegistry,
        summarizer: Optional[Summarizer] = None,
        rehydrator: Optional[Rehydrator] = None,
        audit_path: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or MEMORY_CONFIG
        self.store = store
        self.registry = registry
        self.audit_log = AuditLog(audit_path) if audit_path else None
        self.consolidator = Consolidator(store, summarizer, self.audit_log, self.config)
        self.queue = ConsolidationQueue(self.consolidator, self.config)
        self.loader = BootLoader(store, registry, self.queue, rehydrator, self.config)
        self.editor = MemoryEditor(store, registry, self.audit_log, self.config)
        self.distributor = LessonDistributor(store, registry, self.audit_log, self.config)

    @classmethod
    def from_config(
        cls,
        base_path: Optional[Path] = None,
        registry_path: Optional[str] = None,
        summarizer: Optional[Summarizer] = None,
        rehydrator: Optional[Rehydrator] = None,
    ) -> "MemorySystem":
        """Build a system backed by the JSON store under base_path."""
        base_path = Path(base_path or MEMORY_BASE_PATH)
        logger.info("Using memory store at %s", base_path)
        return cls(
            store=JsonGraphStore(base_path),
            registry=load_agent_registry(registry_path),
            summarizer=summarizer,
            rehydrator=rehydrator,
            audit_path=base_path / "audit.log",
        )

    async def boot(self, agent_id: str, quick: bool = False):
        return await self.loader.boot(agent_id, quick=quick)

    async def status(self, agent_id: str) -> Dict[str, Any]:
        return await self.editor.status(agent_id)

    async def store_memory(
        self,
        agent_id: str,
        content: str,
        memory_type: str = "learning",
        tier: Optional[Tier] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return await self.editor.store(agent_id, content, memory_type, tier, tags)

    async def store_context_fold(self, agent_id: str, summary: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.editor.store_context_fold(agent_id, summary, session_id)

    async def consolidate(self, agent_id: str) -> Dict[str, Any]:
        return await self.consolidator.consolidate(agent_id)

    async def edit(self, agent_id: str, memory_id: str, new_content: str) -> Dict[str, Any]:
        return await self.editor.edit(agent_id, memory_id, new_content)

    async def delete(self, agent_id: str, memory_id: str) -> Dict[str, Any]:
        return await self.editor.delete(agent_id, memory_id)

    async def promote(self, agent_id: str, memory_id: str) -> Dict[str, Any]:
        return await self.editor.promote(agent_id, memory_id)

    async def forget(self, agent_id: str, max_age_days: int) -> Dict[str, Any]:
        return await self.editor.forget(agent_id, max_age_days)

    async def cleanup(
        self,
        agent_id: str,
        max_age_days: Optional[int] = None,
        keep_types: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return await self.editor.cleanup(agent_id, max_age_days, keep_types)

    async def cleanup_all(
        self,
        max_age_days: Optional[int] = None,
        keep_types: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return await self.editor.cleanup_all(max_age_days, keep_types)

    async def distribute(
        self,
        title: str,
        content: str,
        domain: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.distributor.distribute(title, content, domain, source)

    async def audit(self, agent_id: str, include_deleted: bool = True) -> Dict[str, Any]:
        return await self.editor.audit_memories(agent_id, include_deleted)

    async def close(self) -> None:
        """Stop the background consolidation worker."""
        await self.queue.stop()
