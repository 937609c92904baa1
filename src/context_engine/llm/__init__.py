"""
Model-backed capabilities consumed by the engine.

Interfaces:
- BaseLLM: completion
- Summarizer: compression for the optimize step
- Embedder: vectors for long-term memory search
- ToolSelector: tool classification
"""

from .base import (
    BaseLLM,
    Embedder,
    LLMMessage,
    LLMResponse,
    Summarizer,
    ToolCall,
    ToolDefinition,
    ToolSelector,
)
from .adapters import LLMSummarizer, LLMToolSelector, to_llm_messages

__all__ = [
    "BaseLLM",
    "Embedder",
    "LLMMessage",
    "LLMResponse",
    "Summarizer",
    "ToolCall",
    "ToolDefinition",
    "ToolSelector",
    "LLMSummarizer",
    "LLMToolSelector",
    "to_llm_messages",
]
