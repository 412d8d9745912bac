"""Record shapes for memories, lessons, folds and boot telemetry."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Tier = Literal["core", "working", "archival"]
MemoryStatus = Literal["active", "consolidated", "deleted"]

MEMORY_TIERS = ("core", "working", "archival")

MEMORY_LABEL = "Memory"
LESSON_LABEL = "Lesson"
FOLD_LABEL = "ContextFold"
BOOT_EVENT_LABEL = "BootEvent"
AGENT_LABEL = "Agent"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Memory(BaseModel):
    """Schema for a single remembered fact belonging to one agent."""
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: str
    agent_id: str
    content: str
    memory_type: str = "learning"
    tier: Tier = "working"
    tags: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    version: int = Field(default=1, ge=1)
    status: MemoryStatus = "active"
    deleted: bool = False
    deleted_at: Optional[str] = None
    consolidated_from: List[str] = Field(default_factory=list)
    consolidated_to: Optional[str] = None
    lesson_id: Optional[str] = None


class Lesson(BaseModel):
    """Schema for a lesson validated for sharing across agents."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    title: str
    content: str
    domain: str = "general"
    source: str = "system"
    agent_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    distributed: bool = False


class ContextFold(BaseModel):
    """A compressed summary of a finished session."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    agent_id: str
    summary: str
    session_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)


class BootEvent(BaseModel):
    """One row per agent per day, upserted on every boot."""

    id: str
    agent_id: str
    date: str
    boot_count: int = 0
    last_boot_at: str = Field(default_factory=utc_now)
    memories_loaded: int = 0
    lessons_loaded: int = 0
    folds_loaded: int = 0
    tokens_estimate: int = 0


class BootSnapshot(BaseModel):
    """Everything an agent needs at session start. Never persisted."""

    agent_id: str
    booted_at: str = Field(default_factory=utc_now)
    core: List[Memory] = Field(default_factory=list)
    working: List[Memory] = Field(default_factory=list)
    archival: List[Memory] = Field(default_factory=list)
    lessons: List[Lesson] = Field(default_factory=list)
    context_folds: List[ContextFold] = Field(default_factory=list)
    profile: Optional[Dict[str, Any]] = None
    rehydrated: bool = False
    tokens_estimate: int = 0
    errors: List[str] = Field(default_factory=list)

    def stats(self) -> Dict[str, int]:
        return {
            "core": len(self.core),
            "working": len(self.working),
            "archival": len(self.archival),
            "memories_loaded": len(self.core) + len(self.working) + len(self.archival),
            "lessons_loaded": len(self.lessons),
            "folds_loaded": len(self.context_folds),
            "tokens_estimate": self.tokens_estimate,
        }
