"""Configuration for the tiered memory system.

Paths come from the environment; everything else lives in MEMORY_CONFIG.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MEMORY_BASE_PATH = Path(os.getenv("MEMORY_BASE_PATH", ".agents/memory"))
AGENT_REGISTRY_PATH = os.getenv("AGENT_REGISTRY_PATH")

# Types that always live in core and are never aged out
RESERVED_CORE_TYPES = frozenset({"identity", "critical", "fact", "persona"})

MEMORY_CONFIG: Dict[str, Any] = {
    "boot": {
        "working_window_days": 7,
        "limits": {
            "full": {"working": 20, "archival": 10, "lessons": 10, "folds": 5},
            "quick": {"working": 5, "archival": 3, "lessons": 3, "folds": 2},
        },
    },
    "consolidation": {
        "min_age_hours": 24,
        "target_tokens": 500,
        "max_attempts": 3,
        "backoff_seconds": 1.0,
        "max_backoff_seconds": 30.0,
    },
    "cleanup": {
        "max_age_days": 30,
        "keep_types": ["fact", "critical", "lesson"],
    },
    "timeouts": {
        "store_seconds": 5.0,
        "summarizer_seconds": 30.0,
        "rehydrate_seconds": 5.0,
    },
}

DEFAULT_AGENTS = [
    "main", "github", "data", "infra", "strategist", "security",
    "analyst", "coder", "orchestrator", "documentalist", "harvester", "contracts",
]


class AgentProfile(BaseModel):
    """Static description of one agent in the population."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1, max_length=100)
    name: Optional[str] = None
    tier: Optional[str] = None
    persona: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)


class AgentRegistry(BaseModel):
    """The known agent population, injected wherever it is needed."""

    agents: List[AgentProfile] = Field(default_factory=list)

    def agent_ids(self) -> List[str]:
        return [agent.id for agent in self.agents]

    def get(self, agent_id: str) -> Optional[AgentProfile]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def domains_for(self, agent_id: str) -> List[str]:
        profile = self.get(agent_id)
        return list(profile.domains) if profile else []

    @classmethod
    def from_ids(cls, agent_ids: List[str]) -> "AgentRegistry":
        return cls(agents=[AgentProfile(id=agent_id) for agent_id in agent_ids])


def load_agent_registry(path: Optional[str] = None) -> AgentRegistry:
    """Load the agent registry from a JSON file.

    The file holds either a list of agent ids or a list of profile objects.
    Falls back to the default population when no path is configured.
    """
    path = path or AGENT_REGISTRY_PATH
    if not path:
        return AgentRegistry.from_ids(DEFAULT_AGENTS)

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("agents", [])

    agents = [
        AgentProfile(id=entry) if isinstance(entry, str) else AgentProfile(**entry)
        for entry in data
    ]
    logger.info("Loaded %d agents from %s", len(agents), path)
    return AgentRegistry(agents=agents)
