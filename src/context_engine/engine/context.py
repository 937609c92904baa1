"""
Context assembly.

Collects candidate items for one inference call, tags each with a priority
by source, and fits the set into the token budget.
"""

from collections.abc import Iterable

import structlog

from ..config import Settings
from ..errors import ItemTooLarge
from ..llm.base import Summarizer
from ..memory.relevance import RelevanceScorer, ScoreCache
from ..memory.store import MEMORY_NAMESPACE, MemoryStore, MemoryTier
from ..memory.user_profile import ProfileManager
from .compaction import CompactionConfig, compact_context
from .items import AssembledContext, AssemblyOptions, ContextItem, Priority, order_items, total_tokens
from .session import Session
from .tokens import TokenCounter

logger = structlog.get_logger()


class ContextManager:
    """Builds token-bounded, priority-ordered contexts."""

    def __init__(
        self,
        settings: Settings,
        counter: TokenCounter,
        store: MemoryStore,
        profiles: ProfileManager,
        summarizer: Summarizer | None = None,
        scorer: RelevanceScorer | None = None,
    ):
        self.settings = settings
        self.counter = counter
        self.store = store
        self.profiles = profiles
        self.summarizer = summarizer
        self.scorer = scorer or store.scorer

    def budget_for(self, options: AssemblyOptions | None = None) -> int:
        """Tokens available to the assembled context."""
        options = options or AssemblyOptions()
        max_tokens = options.max_tokens or self.settings.max_tokens or self.counter.context_window
        reserve = self.settings.reserve_tokens if options.reserve_tokens is None else options.reserve_tokens
        if reserve < 0 or reserve >= max_tokens:
            raise ValueError(f"reserve_tokens ({reserve}) must be in [0, max_tokens={max_tokens})")
        return max_tokens - reserve

    async def collect(
        self,
        user_id: str,
        session: Session,
        query: str,
        options: AssemblyOptions,
        tool_results: Iterable[str] = (),
        timeout: float | None = None,
    ) -> list[ContextItem]:
        """Gather candidate items in insertion order.

        Memory hits are the user's own records plus shared ones that have no
        owner. ``timeout`` bounds the query embedding.
        """
        items: list[ContextItem] = []

        def add(content: str, priority: Priority, source: str, tokens: int | None = None, **kwargs) -> None:
            items.append(ContextItem(
                content=content,
                priority=priority,
                token_count=self.counter.count(content) if tokens is None else tokens,
                source=source,
                sequence=len(items),
                **kwargs,
            ))

        system_prompt = self.settings.default_system_prompt if options.system_prompt is None else options.system_prompt
        if system_prompt:
            add(system_prompt, Priority.CRITICAL, "system")

        profile = await self.profiles.get(user_id)
        if profile is not None:
            preamble = profile.get_context_for_prompt()
            if preamble:
                add(preamble, Priority.HIGH, "profile", source_tier=MemoryTier.LONG_TERM)

        history = session.conversation_history
        recent_from = max(0, len(history) - self.settings.recent_turns)
        for index, turn in enumerate(history):
            add(
                turn.content,
                Priority.HIGH if index >= recent_from else Priority.LOW,
                "history",
                tokens=self.counter.estimate({"role": turn.role, "content": turn.content}),
                source_tier=MemoryTier.SHORT_TERM,
                metadata={"role": turn.role},
            )

        limit = self.settings.memory_search_limit if options.memory_limit is None else options.memory_limit
        if query.strip():
            hits = await self.store.search(
                query,
                limit=limit,
                owner_user_id=user_id,
                namespace=MEMORY_NAMESPACE,
                include_shared=True,
                timeout=timeout,
            )
            for hit in hits:
                add(
                    hit.record.text,
                    Priority.MEDIUM,
                    "memory",
                    source_tier=MemoryTier.LONG_TERM,
                    metadata={"key": hit.record.key, "score": hit.score},
                )

        for text in options.background:
            add(text, Priority.LOW, "background")

        for result in tool_results:
            add(result, Priority.HIGH, "tool")

        add(query, Priority.HIGH, "query", pinned=True)
        return items

    async def fit(
        self,
        candidates: list[ContextItem],
        budget: int,
        query: str = "",
        relevance_pruning: bool | None = None,
        timeout: float | None = None,
    ) -> AssembledContext:
        """Fit candidates into ``budget``, optimizing only when needed.

        Raises:
            ItemTooLarge: a single candidate exceeds the budget
            ContextOverflow: CRITICAL and pinned items alone exceed the budget
        """
        for item in candidates:
            if item.token_count > budget:
                raise ItemTooLarge(item, budget)

        total = total_tokens(candidates)
        over_budget = total > budget
        near_budget = self.settings.proactive_compaction and total > self.settings.optimize_threshold * budget

        if not over_budget and not near_budget:
            return AssembledContext(items=order_items(candidates), total_tokens=total, budget=budget)

        if relevance_pruning is None:
            relevance_pruning = self.settings.relevance_pruning
        scores = ScoreCache(self.scorer, query) if relevance_pruning else None

        result = await compact_context(
            candidates,
            budget,
            self.counter,
            summarizer=self.summarizer,
            config=CompactionConfig(
                summary_ratio=self.settings.summary_ratio,
                timeout=timeout or self.settings.external_call_timeout_seconds,
            ),
            scores=scores,
        )
        return AssembledContext(
            items=result.items,
            total_tokens=result.total_tokens,
            budget=budget,
            optimized=result.total_tokens < total,
            summarized=result.summarized,
            evicted=result.evicted,
        )

    async def assemble(
        self,
        user_id: str,
        session: Session,
        query: str,
        options: AssemblyOptions | None = None,
        tool_results: Iterable[str] = (),
    ) -> AssembledContext:
        """Collect and fit the context for one inference call."""
        options = options or AssemblyOptions()
        budget = self.budget_for(options)
        candidates = await self.collect(user_id, session, query, options, tool_results, options.timeout)
        context = await self.fit(
            candidates,
            budget,
            query=query,
            relevance_pruning=options.relevance_pruning,
            timeout=options.timeout,
        )
        logger.info(
            "Context assembled",
            user_id=user_id,
            session_id=session.session_id,
            candidates=len(candidates),
            items=len(context.items),
            total_tokens=context.total_tokens,
            budget=budget,
            summarized=context.summarized,
            evicted=len(context.evicted),
        )
        return context
