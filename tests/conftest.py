"""Test fixtures and configuration for the tiered memory tests.

Every test gets its own JSON store under pytest's tmp_path, a three-agent
registry and a config with short timeouts and no retry backoff.
"""

import copy
from typing import Any, Dict

import pytest

from helpers import FlakyStore
from tiered_memory import MEMORY_CONFIG, AgentRegistry, JsonGraphStore, MemorySystem


@pytest.fixture
def fast_config() -> Dict[str, Any]:
    config = copy.deepcopy(MEMORY_CONFIG)
    config["consolidation"]["backoff_seconds"] = 0
    config["timeouts"] = {"store_seconds": 2.0, "summarizer_seconds": 2.0, "rehydrate_seconds": 0.2}
    return config


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry.from_ids(["main", "coder", "analyst"])


@pytest.fixture
def json_store(tmp_path) -> JsonGraphStore:
    return JsonGraphStore(tmp_path / "store")


@pytest.fixture
def store(json_store) -> FlakyStore:
    """A real JSON store that tests can make fail on demand."""
    return FlakyStore(json_store)


@pytest.fixture
def system(store, registry, fast_config, tmp_path) -> MemorySystem:
    return MemorySystem(
        store=store,
        registry=registry,
        audit_path=tmp_path / "audit.log",
        config=fast_config,
    )
