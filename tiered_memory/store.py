"""Store adapter contract and the default JSON-backed graph store.

Records are plain dicts grouped by label (Memory, Lesson, ContextFold,
BootEvent, Agent) and keyed by their `id`. Writes are upserts.
"""

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field

from .utils import parse_timestamp

logger = logging.getLogger(__name__)


class QueryFilter(BaseModel):
    """Parametrized filter understood by every store adapter.

    All clauses are ANDed together. `any_match` is a list of equality groups
    of which at least one must match.
    """
    model_config = ConfigDict(extra="forbid")

    equals: Dict[str, Any] = Field(default_factory=dict)
    not_equals: Dict[str, Any] = Field(default_factory=dict)
    any_of: Dict[str, List[Any]] = Field(default_factory=dict)
    none_of: Dict[str, List[Any]] = Field(default_factory=dict)
    any_match: List[Dict[str, Any]] = Field(default_factory=list)
    before: Dict[str, str] = Field(default_factory=dict)
    after: Dict[str, str] = Field(default_factory=dict)
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = Field(default=None, ge=0)

    def matches(self, record: Dict[str, Any]) -> bool:
        for key, value in self.equals.items():
            if record.get(key) != value:
                return False
        for key, value in self.not_equals.items():
            if record.get(key) == value:
                return False
        for key, values in self.any_of.items():
            if record.get(key) not in values:
                return False
        for key, values in self.none_of.items():
            if record.get(key) in values:
                return False
        if self.any_match and not any(
            all(record.get(key) == value for key, value in group.items())
            for group in self.any_match
        ):
            return False
        for key, bound in self.before.items():
            value = record.get(key)
            if not value or parse_timestamp(value) >= parse_timestamp(bound):
                return False
        for key, bound in self.after.items():
            value = record.get(key)
            if not value or parse_timestamp(value) < parse_timestamp(bound):
                return False
        return True

    def apply(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        results = [record for record in records if self.matches(record)]
        if self.order_by:
            key = self.order_by
            results.sort(key=lambda r: (r.get(key) is not None, r.get(key) or ""), reverse=self.descending)
        if self.limit is not None:
            results = results[:self.limit]
        return results


class StoreAdapter(Protocol):
    """Graph-shaped record store consumed by the memory system."""

    async def write(self, label: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def query(self, label: str, query_filter: QueryFilter) -> List[Dict[str, Any]]:
        ...

    async def update(self, label: str, record_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...


class JsonGraphStore:
    """Store adapter persisting one JSON document per label.

    Each label file maps record id to record. Access is serialized per label
    with an asyncio lock and every save goes through a temp file and an
    atomic replace.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _label_path(self, label: str) -> Path:
        return self.base_path / f"{label.lower()}.json"

    async def _load(self, label: str) -> Dict[str, Dict[str, Any]]:
        path = self._label_path(label)
        if not await aiofiles.os.path.exists(path):
            return {}
        try:
            async with aiofiles.open(path, "r") as f:
                content = await f.read()
        except OSError as e:
            raise RuntimeError(f"Failed to read {label} records: {e}")
        try:
            return json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Corrupted {label} store at {path}: {e}")

    async def _save(self, label: str, records: Dict[str, Dict[str, Any]]) -> None:
        path = self._label_path(label)
        temp_file = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(records, indent=2))
            await aiofiles.os.replace(temp_file, path)
        except OSError as e:
            raise RuntimeError(f"Failed to save {label} records: {e}")

    async def write(self, label: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if not record.get("id"):
            raise ValueError(f"{label} record has no id")
        async with self._locks[label]:
            records = await self._load(label)
            records[record["id"]] = dict(record)
            await self._save(label, records)
        return dict(record)

    async def query(self, label: str, query_filter: QueryFilter) -> List[Dict[str, Any]]:
        async with self._locks[label]:
            records = await self._load(label)
        return query_filter.apply([dict(r) for r in records.values()])

    async def update(self, label: str, record_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._locks[label]:
            records = await self._load(label)
            record = records.get(record_id)
            if record is None:
                return None
            record.update(patch)
            await self._save(label, records)
        return dict(record)
