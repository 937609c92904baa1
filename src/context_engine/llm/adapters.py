"""
Capabilities built on top of a completion model.

- LLMSummarizer: summarization for the optimize step
- LLMToolSelector: asks the model which tools apply to a query
- to_llm_messages: renders an assembled context as a message list
"""

from typing import TYPE_CHECKING

import structlog

from .base import BaseLLM, LLMMessage, Summarizer, ToolCall, ToolDefinition, ToolSelector

if TYPE_CHECKING:
    from ..engine.items import AssembledContext

logger = structlog.get_logger()

SUMMARY_SYSTEM_PROMPT = "You are a context summarizer. Create concise, fact-preserving summaries."

SELECTOR_SYSTEM_PROMPT = (
    "Decide which of the available tools, if any, must be called to answer the user's "
    "message. Call only tools that are clearly needed. If none apply, reply without tool calls."
)

# Section headings for context folded into the system prompt
_SECTION_TITLES = {
    "profile": "About the User",
    "memory": "Relevant Memories",
    "summary": "Earlier Context (summarized)",
    "background": "Background",
}


class LLMSummarizer(Summarizer):
    """Summarizes text with a completion model."""

    def __init__(self, llm: BaseLLM):
        self.llm = llm

    async def summarize(self, text: str, target_tokens: int) -> str:
        # Roughly 0.75 words per token
        target_words = max(10, int(target_tokens * 0.75))
        prompt = f"""Summarize the following context into a concise block.
Preserve:
- Any specific facts, names, dates, or numbers mentioned
- The user's requests and what was accomplished
- Any preferences or important information the user shared
- Tool results and their outcomes

Keep it under {target_words} words.

Context:
{text}

Summary:"""

        response = await self.llm.generate(
            messages=[LLMMessage(role="user", content=prompt)],
            system_prompt=SUMMARY_SYSTEM_PROMPT,
        )
        return response.content.strip()


class LLMToolSelector(ToolSelector):
    """Lets the completion model pick tool calls for a query."""

    def __init__(self, llm: BaseLLM):
        self.llm = llm

    async def select(self, query: str, tools: list[ToolDefinition]) -> list[ToolCall]:
        if not tools:
            return []
        response = await self.llm.generate(
            messages=[LLMMessage(role="user", content=query)],
            tools=tools,
            system_prompt=SELECTOR_SYSTEM_PROMPT,
        )
        known = {tool.name for tool in tools}
        calls = [call for call in response.tool_calls if call.name in known]
        if len(calls) != len(response.tool_calls):
            logger.warning(
                "Selector proposed unknown tools",
                proposed=[call.name for call in response.tool_calls],
            )
        return calls


def to_llm_messages(context: "AssembledContext") -> tuple[str, list[LLMMessage]]:
    """Render an assembled context as (system_prompt, messages).

    System, profile, memory, summary and background items go into the system
    prompt. History turns become messages in chronological order, tool results
    follow them, and the current query is the final user message.
    """
    system_parts: list[str] = []
    sections: dict[str, list[str]] = {}
    history = []
    tools = []
    query = None

    for item in context.items:
        if item.source == "system":
            system_parts.append(item.content)
        elif item.source == "history":
            history.append(item)
        elif item.source == "tool":
            tools.append(item)
        elif item.source == "query":
            query = item
        else:
            sections.setdefault(item.source, []).append(item.content)

    for source, title in _SECTION_TITLES.items():
        if source in sections:
            system_parts.append(f"## {title}\n" + "\n".join(sections[source]))

    messages: list[LLMMessage] = []
    for item in sorted(history, key=lambda i: i.sequence):
        role = item.metadata.get("role", "user")
        if role not in ("user", "assistant"):
            role = "user"
        messages.append(LLMMessage(role=role, content=item.content))

    for item in sorted(tools, key=lambda i: i.sequence):
        messages.append(LLMMessage(role="user", content=item.content))

    if query is not None:
        messages.append(LLMMessage(role="user", content=query.content))

    return "\n\n".join(system_parts), messages
