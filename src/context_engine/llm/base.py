"""
Interfaces for the model-backed capabilities the engine consumes.

None of these are implemented here against a provider SDK. Applications plug
in their own LLM client, embedding model, and summarizer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass
class ToolDefinition:
    """A tool as offered to a selector: name, purpose and JSON Schema."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool invocation proposed by a selector."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMMessage:
    role: Literal["user", "assistant", "system"]
    content: str


@dataclass
class LLMResponse:
    """What a completion call returned."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class BaseLLM(ABC):
    """Completion capability. Consumes a bounded context, returns text."""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        pass


class Summarizer(ABC):
    """Compresses text to roughly a target token count."""

    @abstractmethod
    async def summarize(self, text: str, target_tokens: int) -> str:
        pass


class Embedder(ABC):
    """Turns text into a vector for similarity search."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        pass


class ToolSelector(ABC):
    """Decides which registered tools apply to a query."""

    @abstractmethod
    async def select(self, query: str, tools: list[ToolDefinition]) -> list[ToolCall]:
        pass
