"""
Tiered Memory MCP Server for Multi-Agent Populations

This MCP server exposes the tiered memory system shared by a population of
agents: session boot, storage, consolidation, editing, garbage collection
and cross-agent lesson distribution.

Tool set:
- boot_memory, memory_status, store_memory, store_context_fold
- consolidate_memories, edit_memory, delete_memory, promote_memory
- forget_memories, cleanup_memories, distribute_lesson, audit_memories
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field

from tiered_memory import MEMORY_CONFIG, RESERVED_CORE_TYPES, MemorySystem, Tier

logging.basicConfig(
    level=os.getenv("MEMORY_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("tiered_memory_mcp")

_memory_system: Optional[MemorySystem] = None


def get_memory_system() -> MemorySystem:
    """Return the process-wide memory system, building it on first use."""
    global _memory_system
    if _memory_system is None:
        _memory_system = MemorySystem.from_config()
    return _memory_system


def set_memory_system(system: Optional[MemorySystem]) -> None:
    global _memory_system
    _memory_system = system


# ============================================================================
# Input Models for Tools
# ============================================================================

class BootMemoryInput(BaseModel):
    """Input for booting an agent's memory at session start."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(default="main", description="ID of the agent to boot", min_length=1, max_length=100)
    quick: bool = Field(default=False, description="Load fewer items per section")


class MemoryStatusInput(BaseModel):
    """Input for reading memory statistics."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(default="main", description="ID of the agent", min_length=1, max_length=100)


class StoreMemoryInput(BaseModel):
    """Input for storing a new memory item."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent storing the memory", min_length=1, max_length=100)
    content: str = Field(..., description="The memory content to store", min_length=1)
    memory_type: str = Field(
        default="learning",
        description="Type of memory (e.g., 'learning', 'insight', 'identity', 'fact')",
        min_length=1,
        max_length=50,
    )
    tier: Optional[Tier] = Field(
        None,
        description="Requested tier: 'core', 'working' or 'archival'. Reserved types always go to core",
    )
    tags: List[str] = Field(default_factory=list, description="Tags for categorization", max_length=20)


class StoreContextFoldInput(BaseModel):
    """Input for storing a folded session summary."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent", min_length=1, max_length=100)
    summary: str = Field(..., description="Compressed summary of the session", min_length=1)
    session_id: Optional[str] = Field(None, description="Session the summary came from")


class ConsolidateInput(BaseModel):
    """Input for consolidating aging working memories."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent", min_length=1, max_length=100)


class EditMemoryInput(BaseModel):
    """Input for replacing a memory's content."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent owning the memory", min_length=1, max_length=100)
    memory_id: str = Field(..., description="ID of memory to edit", min_length=1)
    content: str = Field(..., description="New content", min_length=1)


class MemoryRefInput(BaseModel):
    """Input identifying a single memory."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent owning the memory", min_length=1, max_length=100)
    memory_id: str = Field(..., description="ID of the memory", min_length=1)


class ForgetMemoriesInput(BaseModel):
    """Input for forgetting old working memories."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent", min_length=1, max_length=100)
    max_age_days: int = Field(default=30, description="Forget working memories not updated for this many days", ge=1, le=3650)


class CleanupMemoriesInput(BaseModel):
    """Input for scheduled memory cleanup."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent, or 'all' for every registered agent", min_length=1, max_length=100)
    max_age_days: int = Field(
        default=MEMORY_CONFIG["cleanup"]["max_age_days"],
        description="Delete memories not updated for this many days",
        ge=1,
        le=3650,
    )
    keep_types: Optional[List[str]] = Field(
        None,
        description="Memory types to preserve (defaults to fact, critical, lesson)",
        max_length=50,
    )


class DistributeLessonInput(BaseModel):
    """Input for sharing a validated lesson with every agent."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    title: str = Field(..., description="Short lesson title", min_length=1, max_length=200)
    content: str = Field(..., description="Lesson content", min_length=1)
    domain: Optional[str] = Field(None, description="Knowledge domain (defaults to 'general')", max_length=50)
    source: Optional[str] = Field(None, description="Where the lesson came from", max_length=100)


class AuditMemoriesInput(BaseModel):
    """Input for the audit listing of an agent's memories."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    agent_id: str = Field(..., description="ID of the agent", min_length=1, max_length=100)
    include_deleted: bool = Field(default=True, description="Include soft-deleted and consolidated memories")


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool(
    name="boot_memory",
    annotations={
        "title": "Boot Agent Memory",
        "readOnlyHint": False,  # Records a boot event and schedules consolidation
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def boot_memory(params: BootMemoryInput) -> Dict[str, Any]:
    """Load an agent's full memory snapshot for a new session.

    Reads core, recent working and archival memories, relevant lessons,
    recent context folds and the agent profile in parallel. A section that
    fails to load comes back empty. Consolidation is scheduled in the
    background after the reads complete.

    Args:
        params: BootMemoryInput with agent_id and quick flag.

    Returns:
        Dict with every snapshot section, rehydrated flag, tokens_estimate,
        per-section stats and the list of sections that failed.
    """
    snapshot = await get_memory_system().boot(params.agent_id, quick=params.quick)
    result = snapshot.model_dump(mode="json")
    result["stats"] = snapshot.stats()
    return result


@mcp.tool(
    name="memory_status",
    annotations={
        "title": "Get Memory Status",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def memory_status(params: MemoryStatusInput) -> Dict[str, Any]:
    """Get tier counts and last-boot metadata for an agent.

    Args:
        params: MemoryStatusInput with agent_id.

    Returns:
        Dict with tiers counts, memory_count, deleted_count, tokens,
        lesson_count, fold_count, last_boot and boot_count.
    """
    return await get_memory_system().status(params.agent_id)


@mcp.tool(
    name="store_memory",
    annotations={
        "title": "Store Agent Memory",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def store_memory(params: StoreMemoryInput) -> Dict[str, Any]:
    """Store a new memory item for an agent.

    Reserved types (identity, critical, fact, persona) are always stored in
    core regardless of the requested tier. Everything else defaults to
    working.

    Args:
        params: StoreMemoryInput with agent_id, content, memory_type, tier and tags.

    Returns:
        Dict with success status, memory_id, tier and size_tokens.
    """
    return await get_memory_system().store_memory(
        params.agent_id, params.content, params.memory_type, params.tier, params.tags
    )


@mcp.tool(
    name="store_context_fold",
    annotations={
        "title": "Store Context Fold",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def store_context_fold(params: StoreContextFoldInput) -> Dict[str, Any]:
    """Store a compressed session summary to be replayed at the next boot."""
    return await get_memory_system().store_context_fold(params.agent_id, params.summary, params.session_id)


@mcp.tool(
    name="consolidate_memories",
    annotations={
        "title": "Consolidate Working Memories",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def consolidate_memories(params: ConsolidateInput) -> Dict[str, Any]:
    """Compress working memories older than 24 hours into one archival memory.

    Originals are soft-deleted and point at the new archival record.
    Running it again with nothing new to compress is a no-op.

    Args:
        params: ConsolidateInput with agent_id.

    Returns:
        Dict with consolidated_count, archival_created and, when a record
        was created, archival_id, summary and used_fallback.
    """
    return await get_memory_system().consolidate(params.agent_id)


@mcp.tool(
    name="edit_memory",
    annotations={
        "title": "Edit Memory",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def edit_memory(params: EditMemoryInput) -> Dict[str, Any]:
    """Replace a memory's content and bump its version.

    Editing a deleted memory is a no-op reported with changed=False.
    """
    return await get_memory_system().edit(params.agent_id, params.memory_id, params.content)


@mcp.tool(
    name="delete_memory",
    annotations={
        "title": "Delete Memory",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def delete_memory(params: MemoryRefInput) -> Dict[str, Any]:
    """Soft-delete a memory. The record is kept for auditing."""
    return await get_memory_system().delete(params.agent_id, params.memory_id)


@mcp.tool(
    name="promote_memory",
    annotations={
        "title": "Promote Memory to Core",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def promote_memory(params: MemoryRefInput) -> Dict[str, Any]:
    """Promote a memory to the core tier.

    Core memories are loaded on every boot and never aged out.

    Returns:
        Dict with success status, memory_id, from_tier and to_tier.
    """
    return await get_memory_system().promote(params.agent_id, params.memory_id)


@mcp.tool(
    name="forget_memories",
    annotations={
        "title": "Forget Old Memories",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def forget_memories(params: ForgetMemoriesInput) -> Dict[str, Any]:
    """Soft-delete working memories older than max_age_days.

    Core memories and reserved types are never forgotten.
    """
    return await get_memory_system().forget(params.agent_id, params.max_age_days)


@mcp.tool(
    name="cleanup_memories",
    annotations={
        "title": "Cleanup Agent Memories",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def cleanup_memories(params: CleanupMemoriesInput) -> Dict[str, Any]:
    """Run scheduled maintenance for one agent or, with agent_id 'all', every agent.

    Soft-deletes non-core memories older than max_age_days unless their
    type is in keep_types or is a reserved core type.

    Returns:
        For one agent: deleted count, preserved_types and sample ids.
        For all agents: agents_processed, total_deleted and per-agent results.
    """
    system = get_memory_system()
    if params.agent_id == "all":
        return await system.cleanup_all(params.max_age_days, params.keep_types)
    return await system.cleanup(params.agent_id, params.max_age_days, params.keep_types)


@mcp.tool(
    name="distribute_lesson",
    annotations={
        "title": "Distribute Lesson",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def distribute_lesson(params: DistributeLessonInput) -> Dict[str, Any]:
    """Share a validated lesson with every registered agent.

    The lesson is stored once, then copied into each agent's working tier.
    Agents that fail to receive it are listed in failed_agents; running the
    same lesson again only retries those agents.

    Returns:
        Dict with lesson_id, distributed_to, total_agents and failed_agents.
    """
    return await get_memory_system().distribute(params.title, params.content, params.domain, params.source)


@mcp.tool(
    name="audit_memories",
    annotations={
        "title": "Audit Agent Memories",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def audit_memories(params: AuditMemoriesInput) -> Dict[str, Any]:
    """List an agent's memories including soft-deleted ones, oldest first."""
    return await get_memory_system().audit(params.agent_id, params.include_deleted)


# ============================================================================
# MCP Resources
# ============================================================================

@mcp.resource("memory://{agent_id}/summary")
async def agent_memory_summary(agent_id: str) -> str:
    """Provides a summary of an agent's memory state.

    Use this to quickly check memory usage and status without booting.
    """
    stats = await get_memory_system().status(agent_id)
    if not stats.get("success"):
        return f"Error generating summary for {agent_id}: {stats.get('error')}"

    summary = f"""# Memory Summary: {agent_id}

**Last Boot:** {stats['last_boot'] or 'never'}
**Boot Count:** {stats['boot_count']}

## Tiers
"""
    for tier, count in stats["tiers"].items():
        summary += f"- {tier.title()}: {count} items\n"

    summary += f"""
## Totals
- Live Memories: {stats['memory_count']}
- Deleted (audit only): {stats['deleted_count']}
- Tokens: {stats['tokens']}
- Lessons Available: {stats['lesson_count']}
- Context Folds: {stats['fold_count']}
"""
    return summary


@mcp.resource("memory://config")
def memory_config() -> str:
    """Provides the current memory management configuration."""
    boot = MEMORY_CONFIG["boot"]
    consolidation = MEMORY_CONFIG["consolidation"]
    cleanup = MEMORY_CONFIG["cleanup"]
    timeouts = MEMORY_CONFIG["timeouts"]
    return f"""# Memory Management Configuration

## Memory Tiers

1. **Core:** Identity and reserved types ({', '.join(sorted(RESERVED_CORE_TYPES))}), never aged out
2. **Working:** Session knowledge, consolidated after {consolidation['min_age_hours']} hours
3. **Archival:** Compressed summaries of consolidated working memories

## Boot Limits

- Working Window: {boot['working_window_days']} days
- Full Boot: {boot['limits']['full']}
- Quick Boot: {boot['limits']['quick']}

## Consolidation

- Minimum Age: {consolidation['min_age_hours']} hours
- Summary Target: {consolidation['target_tokens']} tokens
- Retries: {consolidation['max_attempts']} attempts, backoff from {consolidation['backoff_seconds']}s

## Cleanup

- Default Max Age: {cleanup['max_age_days']} days
- Preserved Types: {', '.join(cleanup['keep_types'])}

## Timeouts

- Store: {timeouts['store_seconds']}s
- Summarizer: {timeouts['summarizer_seconds']}s
- Rehydrate: {timeouts['rehydrate_seconds']}s
"""


# ============================================================================
# Server Entry Point
# ============================================================================

if __name__ == "__main__":
    mcp.run(
        transport="sse",
        host=os.getenv("MEMORY_HOST", "0.0.0.0"),
        port=int(os.getenv("MEMORY_PORT", "8080"))
    )
