"""
Context-Engine - context and memory management for LLM applications.
"""

from .config import Settings
from .engine import AssembledContext, AssemblyOptions, ContextEngine, ContextItem, Priority
from .memory import MemoryTier

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "AssembledContext",
    "AssemblyOptions",
    "ContextEngine",
    "ContextItem",
    "Priority",
    "MemoryTier",
]
