"""Helper functions shared across the memory components."""

import asyncio
import hashlib
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

import aiofiles

logger = logging.getLogger(__name__)

T = TypeVar("T")


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def generate_id(prefix: str) -> str:
    """Generate a unique record ID with a readable prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def generate_content_hash(*parts: str) -> str:
    """Stable hash of content, used for identity keys."""
    return hashlib.md5("\x1f".join(parts).encode()).hexdigest()


def cutoff(*, days: float = 0, hours: float = 0) -> str:
    """ISO timestamp for now minus the given age."""
    return (datetime.now(timezone.utc) - timedelta(days=days, hours=hours)).isoformat()


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def guarded(call: Awaitable[T], default: T, timeout: float, label: str) -> T:
    """Await an outbound call with a timeout, returning `default` on any failure.

    Timeouts and errors are soft failures for this call only.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs", label, timeout)
    except Exception as e:
        logger.warning("%s failed: %s", label, e)
    return default


class AuditLog:
    """Append-only log of memory operations for debugging and accountability.

    Writes entries with format: timestamp | agent_id | action | details
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = asyncio.Lock()

    async def record(self, agent_id: str, action: str, details: str = "") -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        entry = f"{timestamp} | {agent_id} | {action} | {details}\n"

        async with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.path, "a") as f:
                    await f.write(entry)
            except Exception as e:
                # Auditing never fails the operation it records
                logger.warning("Audit log write failed: %s", e)
