"""
Context items and assembly results.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from ..memory.store import MemoryTier


class Priority(IntEnum):
    """Ordinal importance of a context item.

    SUMMARY sits between LOW and MEDIUM and is only ever assigned to the
    output of the summarization step.
    """

    LOW = 0
    SUMMARY = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


# Eviction goes LOW, MEDIUM, SUMMARY, HIGH. A summary stands in for several
# items, so it outlives single MEDIUM items.
EVICTION_RANK: dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.SUMMARY: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}

# Used by relevance pruning: eviction key is weight * relevance.
PRIORITY_WEIGHTS: dict[Priority, float] = {
    Priority.LOW: 1.0,
    Priority.MEDIUM: 2.0,
    Priority.SUMMARY: 2.5,
    Priority.HIGH: 4.0,
    Priority.CRITICAL: 8.0,
}


@dataclass(frozen=True)
class ContextItem:
    """A unit of content competing for the context budget."""

    content: str
    priority: Priority
    token_count: int
    source: str = "background"
    source_tier: MemoryTier | None = None
    sequence: int = 0
    pinned: bool = False
    is_summary: bool = False
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        if self.token_count < 0:
            raise ValueError("token_count must not be negative")

    @property
    def evictable(self) -> bool:
        """CRITICAL and pinned items never leave an assembly."""
        return not self.pinned and self.priority < Priority.CRITICAL

    @property
    def compressible(self) -> bool:
        return self.evictable and self.priority < Priority.MEDIUM and not self.is_summary

    def sort_key(self) -> tuple[int, int]:
        return (-int(self.priority), self.sequence)


def order_items(items: list[ContextItem]) -> list[ContextItem]:
    """Priority descending, insertion order as tie-break."""
    return sorted(items, key=ContextItem.sort_key)


def total_tokens(items: list[ContextItem]) -> int:
    return sum(item.token_count for item in items)


@dataclass
class AssemblyOptions:
    """Per-call overrides for a context assembly."""

    max_tokens: int | None = None
    reserve_tokens: int | None = None
    system_prompt: str | None = None
    memory_limit: int | None = None
    relevance_pruning: bool | None = None
    background: list[str] = field(default_factory=list)
    run_tools: bool = False
    timeout: float | None = None


@dataclass
class AssembledContext:
    """A budgeted, priority-ordered context ready for the completion call."""

    items: list[ContextItem]
    total_tokens: int
    budget: int
    optimized: bool = False
    summarized: int = 0
    evicted: list[ContextItem] = field(default_factory=list)
