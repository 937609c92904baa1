"""
Engine module - context assembly and conversation state.

Includes:
- ContextEngine: The operations exposed to applications
- ContextManager: Collect, budget and optimize contexts
- SessionManager: Per-session conversation state
- Compaction: Summarize-then-evict optimization
- TokenCounter: Model-aware token estimates
"""

from .compaction import CompactionConfig, CompactionResult, compact_context
from .context import ContextManager
from .core import ContextEngine
from .items import AssembledContext, AssemblyOptions, ContextItem, Priority
from .session import Session, SessionManager, SessionState, Turn
from .tokens import TokenCounter

__all__ = [
    "CompactionConfig",
    "CompactionResult",
    "compact_context",
    "ContextManager",
    "ContextEngine",
    "AssembledContext",
    "AssemblyOptions",
    "ContextItem",
    "Priority",
    "Session",
    "SessionManager",
    "SessionState",
    "Turn",
    "TokenCounter",
]
