"""Tier classification shared by every write path."""

from typing import Optional

from .config import RESERVED_CORE_TYPES
from .models import Tier


def is_reserved(memory_type: str) -> bool:
    return memory_type in RESERVED_CORE_TYPES


def classify(memory_type: str, requested_tier: Optional[Tier] = None) -> Tier:
    """Decide which tier a memory belongs in.

    Reserved types always land in core, whatever tier was asked for.
    Otherwise the requested tier wins, and new memories default to working.
    """
    if is_reserved(memory_type):
        return "core"
    if requested_tier is not None:
        return requested_tier
    return "working"
