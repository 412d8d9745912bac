"""Tiered persistent memory for a population of agents sharing one store.

Memories live in one of three tiers:
- core: identity and other reserved types, never aged out
- working: recent session knowledge, consolidated after 24 hours
- archival: compressed summaries of consolidated working memories
"""

from .boot import BootLoader
from .config import MEMORY_CONFIG, RESERVED_CORE_TYPES, AgentProfile, AgentRegistry, load_agent_registry
from .consolidation import Consolidator, ConsolidationQueue
from .distributor import LessonDistributor
from .editor import MemoryEditor
from .models import BootEvent, BootSnapshot, ContextFold, Lesson, Memory, Tier
from .service import MemorySystem
from .store import JsonGraphStore, QueryFilter, StoreAdapter
from .summarizer import Rehydrator, Summarizer, truncate_summary
from .tiers import classify, is_reserved

__all__ = [
    "AgentProfile",
    "AgentRegistry",
    "BootEvent",
    "BootLoader",
    "BootSnapshot",
    "ConsolidationQueue",
    "Consolidator",
    "ContextFold",
    "JsonGraphStore",
    "Lesson",
    "LessonDistributor",
    "MEMORY_CONFIG",
    "Memory",
    "MemoryEditor",
    "MemorySystem",
    "QueryFilter",
    "RESERVED_CORE_TYPES",
    "Rehydrator",
    "StoreAdapter",
    "Summarizer",
    "Tier",
    "classify",
    "is_reserved",
    "load_agent_registry",
    "truncate_summary",
]
