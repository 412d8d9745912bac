"""Summarizer and rehydrate collaborators.

Neither is implemented here; the memory system only depends on these
protocols and on the deterministic truncation fallback below.
"""

from typing import Any, Dict, Protocol


class Summarizer(Protocol):
    async def summarize(self, text: str, target_tokens: int, preserve_facts: bool = True) -> str:
        ...


class Rehydrator(Protocol):
    async def rehydrate(self, agent_id: str) -> Dict[str, Any]:
        ...


def truncate_summary(text: str, target_tokens: int, source_count: int) -> str:
    """Fallback used when the summarizer is missing or fails.

    Keeps the first `target_tokens * 4` characters and marks the cut.
    """
    budget = max(target_tokens, 1) * 4
    if len(text) <= budget:
        return text
    return f"{text[:budget].rstrip()}\n[truncated consolidation of {source_count} memories]"
