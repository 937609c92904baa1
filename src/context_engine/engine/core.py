"""
Context engine facade.

This is the surface applications call. It:
1. Resolves the session for a (user, session id) pair
2. Optionally runs the tools a selector deems relevant to the query
3. Assembles a budgeted context from history, profile, memory and tool results
4. Records turns and learns durable preferences from user messages
5. Serves per-user compliance requests (export, delete, anonymize)
6. Registers the remember/recall memory tools
"""

import hashlib
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from ..config import Settings
from ..errors import ExternalCallTimeout, StorageUnavailable
from ..locks import KeyedLocks
from ..llm.base import Embedder, Summarizer, ToolSelector
from ..memory.relevance import RelevanceScorer
from ..memory.sql import create_backends
from ..memory.store import MEMORY_NAMESPACE, MemoryStore, MemoryTier, utcnow
from ..memory.user_profile import ExportBundle, ProfileManager
from ..tools import Tool, ToolInvoker, ToolParameter, ToolRegistry, ToolResult, format_result
from .context import ContextManager
from .items import AssembledContext, AssemblyOptions
from .session import Session, SessionManager, Turn
from .tokens import TokenCounter

logger = structlog.get_logger()

MEMORY_CATEGORIES = [
    "User Preferences",
    "Important Facts",
    "Ongoing Projects",
    "Reminders & Notes",
]


def memory_key(user_id: str, fact: str) -> str:
    """Content-addressed key, so remembering a fact twice overwrites it."""
    digest = hashlib.sha256(f"{user_id}\x00{fact.strip()}".encode("utf-8")).hexdigest()
    return f"mem-{digest[:32]}"


class ContextEngine:
    """Context and memory management for LLM applications."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: MemoryStore | None = None,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
        scorer: RelevanceScorer | None = None,
        tool_registry: ToolRegistry | None = None,
        tool_selector: ToolSelector | None = None,
        token_encoder: Callable[[str], int] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or Settings()
        self.clock = clock
        self.counter = TokenCounter(self.settings.model, encoder=token_encoder)
        self.store = store or MemoryStore(
            settings=self.settings,
            scorer=scorer,
            embedder=embedder,
            clock=clock,
        )
        self.sessions = SessionManager(self.store, self.settings, clock)
        self.profiles = ProfileManager(self.store, self.sessions, clock)
        self.tool_registry = tool_registry or ToolRegistry()
        self.tools = ToolInvoker(
            self.tool_registry,
            selector=tool_selector,
            timeout=self.settings.external_call_timeout_seconds,
        )
        self.context_manager = ContextManager(
            self.settings,
            self.counter,
            self.store,
            self.profiles,
            summarizer=summarizer,
            scorer=scorer,
        )
        self._conversation_locks = KeyedLocks()

        self._register_memory_tools()

        logger.info(
            "Context engine initialized",
            model=self.settings.model,
            budget=self.context_manager.budget_for(),
            tools=len(self.tool_registry.list_tools()),
        )

    @classmethod
    async def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "ContextEngine":
        """Build an engine, opening database backends when configured."""
        settings = settings or Settings()
        backends = None
        if settings.uses_database:
            backends = await create_backends(
                settings.database_url,
                short_term_in_database=settings.short_term_backend == "database",
            )
        store = MemoryStore(
            backends,
            settings,
            scorer=kwargs.get("scorer"),
            embedder=kwargs.get("embedder"),
            clock=kwargs.get("clock", utcnow),
        )
        return cls(settings, store=store, **kwargs)

    async def assemble_context(
        self,
        user_id: str,
        session_id: str,
        query: str,
        options: AssemblyOptions | None = None,
    ) -> AssembledContext:
        """Build the bounded context for the next inference call.

        Holds the session's conversation lock throughout, so concurrent
        requests on one session are served in arrival order.

        Raises:
            ItemTooLarge: a single item exceeds the budget
            ContextOverflow: the budget cannot be met even after optimization
            SessionNotFound: the session id belongs to another user
            ExternalCallTimeout: a summarizer, embedder or tool call timed out
            StorageUnavailable: the long-term tier failed
        """
        options = options or AssemblyOptions()
        timeout = options.timeout or self.settings.external_call_timeout_seconds

        async with self._conversation_locks.hold(session_id):
            session = await self.sessions.get_or_create_session(user_id, session_id)

            if options.run_tools and query.strip():
                await self._run_tools(session, query, timeout)

            # Consumed only after a successful assembly so a failure can be retried
            pending = list(session.pending_tool_results)
            context = await self.context_manager.assemble(user_id, session, query, options, pending)
            if pending:
                await self.sessions.take_pending_tool_results(session_id, len(pending))

        return context

    async def _run_tools(self, session: Session, query: str, timeout: float) -> None:
        results = await self.tools.run_for_query(query, bind={"user_id": session.user_id}, timeout=timeout)
        for call, result in results:
            await self.sessions.add_pending_tool_result(session.session_id, format_result(call.name, result))

    async def record_turn(self, session_id: str, role: str, content: str) -> Turn:
        """Append a turn to a tracked session.

        User turns are also mined for durable preferences.

        Raises:
            SessionNotFound: the session is not tracked or has expired
        """
        async with self._conversation_locks.hold(session_id):
            turn = Turn(role=role, content=content, timestamp=self.clock())
            session = await self.sessions.update_session(session_id, turn=turn)
            if role == "user":
                await self._learn(session.user_id, content)
        return turn

    async def _learn(self, user_id: str, content: str) -> None:
        # The turn is already committed; a failed profile write must not fail it
        try:
            learned = await self.profiles.learn_from_text(user_id, content)
        except (StorageUnavailable, ExternalCallTimeout) as e:
            logger.warning("Could not learn preferences from turn", user_id=user_id, error=str(e))
            return
        if learned:
            logger.debug("Learned preferences", user_id=user_id, keys=sorted(learned))

    async def remember(
        self,
        user_id: str,
        fact: str,
        tier: MemoryTier = MemoryTier.LONG_TERM,
        *,
        key: str | None = None,
        ttl: int | None = None,
        category: str | None = None,
    ) -> str:
        """Store a fact about a user. Returns the record key.

        The write completes before this returns; a LONG_TERM failure raises
        StorageUnavailable.
        """
        key = key or memory_key(user_id, fact)
        value: dict[str, Any] = {"text": fact}
        if category:
            value["category"] = category
        await self.store.store(
            key,
            value,
            tier,
            ttl,
            namespace=MEMORY_NAMESPACE,
            owner_user_id=user_id,
        )
        logger.info("Remembered fact", user_id=user_id, tier=tier.value, key=key)
        return key

    async def forget_user(self, user_id: str) -> None:
        await self.profiles.delete(user_id)

    async def export_user(self, user_id: str) -> ExportBundle:
        return await self.profiles.export_all(user_id)

    async def anonymize_user(self, user_id: str) -> str | None:
        return await self.profiles.anonymize(user_id)

    async def invoke_tool(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Invoke a tool directly.

        With a session id, the formatted result is queued for that session's
        next assembly.

        Raises:
            SessionNotFound: the session is gone; the handler is not run
        """
        if session_id is not None:
            await self.sessions.get_session(session_id)
        result = await self.tools.invoke(name, params, timeout)
        if session_id is not None:
            await self.sessions.add_pending_tool_result(session_id, format_result(name, result))
        return result

    async def list_active_sessions(self, user_id: str) -> list[Session]:
        return await self.sessions.list_active_sessions(user_id)

    async def end_session(self, session_id: str) -> None:
        async with self._conversation_locks.hold(session_id):
            await self.sessions.end_session(session_id)

    async def close(self) -> None:
        await self.store.close()

    async def purge_expired(self) -> dict[MemoryTier, int]:
        """Sweep expired records from every tier."""
        await self.sessions.evict_expired()
        return {tier: await self.store.purge_expired(tier) for tier in MemoryTier}

    def _register_memory_tools(self) -> None:
        """Register memory-related tools."""

        async def remember_tool(user_id: str, memory: str, category: str = "Important Facts") -> ToolResult:
            key = await self.remember(user_id, memory, category=category)
            return ToolResult(
                success=True,
                output=f"Saved to memory ({category}): {memory}",
                data={"key": key},
            )

        async def recall_tool(user_id: str, query: str) -> ToolResult:
            hits = await self.store.search(
                query,
                owner_user_id=user_id,
                namespace=MEMORY_NAMESPACE,
                include_shared=True,
            )
            if not hits:
                return ToolResult(success=True, output="No memories found.", data=[])
            return ToolResult(
                success=True,
                output="Found in memory:\n" + "\n".join(f"- {hit.record.text}" for hit in hits),
                data=[hit.record.key for hit in hits],
            )

        user_param = ToolParameter(
            name="user_id",
            param_type="string",
            description="The user the memory belongs to",
        )

        remember = Tool(
            name="remember",
            description=(
                "Save important information to long-term memory. Use this when the user "
                "shares something worth remembering for future conversations."
            ),
            parameters=[
                user_param,
                ToolParameter(
                    name="memory",
                    param_type="string",
                    description="The information to remember",
                ),
                ToolParameter(
                    name="category",
                    param_type="string",
                    description="What kind of information this is",
                    required=False,
                    default="Important Facts",
                    enum=MEMORY_CATEGORIES,
                ),
            ],
            handler=remember_tool,
        )

        recall = Tool(
            name="recall",
            description="Search and retrieve information from long-term memory.",
            parameters=[
                user_param,
                ToolParameter(
                    name="query",
                    param_type="string",
                    description="What to search for in memory",
                ),
            ],
            handler=recall_tool,
        )

        for tool in (remember, recall):
            if self.tool_registry.get(tool.name) is None:
                self.tool_registry.register(tool)
