"""Shared helpers for building records and simulating store failures."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from tiered_memory.models import Memory
from tiered_memory.store import QueryFilter, StoreAdapter
from tiered_memory.utils import generate_id


def make_memory(
    agent_id: str,
    content: str = "something learned",
    memory_type: str = "learning",
    tier: str = "working",
    age_hours: float = 0,
    **fields: Any,
) -> Dict[str, Any]:
    """Build a memory record whose timestamps are age_hours in the past."""
    stamp = (datetime.now(timezone.utc) - timedelta(hours=age_hours)).isoformat()
    memory = Memory(
        id=fields.pop("id", generate_id("mem")),
        agent_id=agent_id,
        content=content,
        memory_type=memory_type,
        tier=tier,
        created_at=stamp,
        updated_at=stamp,
        **fields,
    )
    return memory.model_dump(mode="json")


Predicate = Callable[[str, str, Any], bool]


class FlakyStore:
    """Wraps a real store and raises for calls matching a predicate."""

    def __init__(self, inner: StoreAdapter):
        self.inner = inner
        self.failures: List[Predicate] = []

    def fail_when(self, predicate: Predicate) -> None:
        self.failures.append(predicate)

    def heal(self) -> None:
        self.failures.clear()

    def _check(self, method: str, label: str, payload: Any) -> None:
        if any(predicate(method, label, payload) for predicate in self.failures):
            raise ConnectionError(f"simulated {method} failure on {label}")

    async def write(self, label: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._check("write", label, record)
        return await self.inner.write(label, record)

    async def query(self, label: str, query_filter: QueryFilter) -> List[Dict[str, Any]]:
        self._check("query", label, query_filter)
        return await self.inner.query(label, query_filter)

    async def update(self, label: str, record_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check("update", label, {"id": record_id, **patch})
        return await self.inner.update(label, record_id, patch)
