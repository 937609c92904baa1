"""
Context compaction - summarize, then evict.

When an assembly does not fit its budget:
1. Items below MEDIUM priority are concatenated and summarized to a fraction
   of their size. The summary replaces them as one SUMMARY item and is never
   summarized again.
2. While the total is still over budget, the least valuable evictable item
   is dropped (oldest first on ties).
3. If only CRITICAL and pinned items remain and the budget is still exceeded,
   ContextOverflow is raised. Nothing is silently truncated.
"""

import asyncio
import math
from dataclasses import dataclass, field

import structlog

from ..errors import ContextOverflow, ExternalCallTimeout
from ..llm.base import Summarizer
from ..memory.relevance import ScoreCache
from .items import EVICTION_RANK, PRIORITY_WEIGHTS, ContextItem, Priority, order_items, total_tokens
from .tokens import TokenCounter

logger = structlog.get_logger()

DEFAULT_SUMMARY_RATIO = 0.25


@dataclass
class CompactionConfig:
    """Configuration for one compaction run."""

    summary_ratio: float = DEFAULT_SUMMARY_RATIO
    compress: bool = True
    timeout: float | None = None


@dataclass
class CompactionResult:
    """Result of a compaction run."""

    items: list[ContextItem]
    total_tokens: int
    original_tokens: int
    summarized: int = 0
    evicted: list[ContextItem] = field(default_factory=list)

    @property
    def tokens_saved(self) -> int:
        return self.original_tokens - self.total_tokens


async def summarize_low_priority(
    items: list[ContextItem],
    counter: TokenCounter,
    summarizer: Summarizer | None,
    config: CompactionConfig,
) -> tuple[list[ContextItem], int]:
    """Replace all compressible items with one summary item.

    Returns the new item list and how many items were summarized. A failed
    summarizer leaves the items untouched; a timed-out one raises.
    """
    compressible = sorted(
        (item for item in items if item.compressible),
        key=lambda item: (item.priority, item.sequence),
    )
    if not compressible or summarizer is None:
        return items, 0

    combined = total_tokens(compressible)
    target = max(1, math.ceil(combined * config.summary_ratio))
    text = "\n\n".join(item.content for item in compressible)

    try:
        summary = await asyncio.wait_for(summarizer.summarize(text, target), config.timeout)
    except asyncio.TimeoutError as e:
        raise ExternalCallTimeout("summarize", config.timeout or 0.0) from e
    except Exception as e:
        logger.error("Summarization failed, falling back to eviction", error=str(e))
        return items, 0

    summary = (summary or "").strip()
    summary_tokens = counter.count(summary)
    if not summary or summary_tokens >= combined:
        logger.warning(
            "Summary did not shrink its input, discarding it",
            original_tokens=combined,
            summary_tokens=summary_tokens,
        )
        return items, 0

    summary_item = ContextItem(
        content=summary,
        priority=Priority.SUMMARY,
        token_count=summary_tokens,
        source="summary",
        sequence=min(item.sequence for item in compressible),
        is_summary=True,
        metadata={"summarized_items": len(compressible), "original_tokens": combined},
    )

    kept = [item for item in items if not item.compressible]
    logger.info(
        "Summarized low-priority context",
        items=len(compressible),
        original_tokens=combined,
        target_tokens=target,
        summary_tokens=summary_tokens,
    )
    return kept + [summary_item], len(compressible)


async def _eviction_key(item: ContextItem, scores: ScoreCache | None) -> tuple[float, int, int]:
    rank = EVICTION_RANK[item.priority]
    if scores is None:
        return (rank, rank, item.sequence)
    relevance = await scores.score(item.content)
    return (PRIORITY_WEIGHTS[item.priority] * relevance, rank, item.sequence)


async def evict_to_budget(
    items: list[ContextItem],
    budget: int,
    scores: ScoreCache | None = None,
) -> tuple[list[ContextItem], list[ContextItem]]:
    """Drop the least valuable evictable items until the budget is met.

    Priority mode drops LOW, then MEDIUM, then SUMMARY, then HIGH. With a
    score cache, items are ordered by priority weight times relevance.

    Raises:
        ContextOverflow: only CRITICAL/pinned items remain and still do not fit
    """
    remaining = list(items)
    evicted: list[ContextItem] = []
    total = total_tokens(remaining)

    while total > budget:
        candidates = [item for item in remaining if item.evictable]
        if not candidates:
            logger.warning("Context overflow", total_tokens=total, budget=budget)
            raise ContextOverflow(total, budget)

        keyed = [(await _eviction_key(item, scores), index) for index, item in enumerate(candidates)]
        _, victim_index = min(keyed)
        victim = candidates[victim_index]

        remaining.remove(victim)
        evicted.append(victim)
        total -= victim.token_count
        logger.debug(
            "Evicted context item",
            source=victim.source,
            priority=victim.priority.name,
            tokens=victim.token_count,
        )

    return remaining, evicted


async def compact_context(
    items: list[ContextItem],
    budget: int,
    counter: TokenCounter,
    summarizer: Summarizer | None = None,
    config: CompactionConfig | None = None,
    scores: ScoreCache | None = None,
) -> CompactionResult:
    """Run the optimize step over a candidate set.

    Args:
        items: Candidate items
        budget: Token budget the result must fit
        counter: Counter used for the summary's cost
        summarizer: Summarization capability, or None to only evict
        config: Compaction configuration
        scores: Per-assembly relevance cache; enables relevance pruning

    Returns:
        The surviving items in assembly order and the realized total
    """
    config = config or CompactionConfig()
    original = total_tokens(items)

    working, summarized = items, 0
    if config.compress:
        working, summarized = await summarize_low_priority(items, counter, summarizer, config)

    working, evicted = await evict_to_budget(working, budget, scores)

    result = CompactionResult(
        items=order_items(working),
        total_tokens=total_tokens(working),
        original_tokens=original,
        summarized=summarized,
        evicted=evicted,
    )
    logger.info(
        "Compaction complete",
        original_tokens=result.original_tokens,
        total_tokens=result.total_tokens,
        budget=budget,
        summarized=summarized,
        evicted=len(evicted),
    )
    return result
