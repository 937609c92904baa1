"""
Tool registry and invoker.

The registry owns named tools and their compiled parameter models. The
invoker validates parameters, runs handlers under a timeout, and formats
results for the next context assembly. Deciding which tools apply to a query
is delegated to a ToolSelector.
"""

import asyncio
import inspect
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from ..errors import DuplicateTool, ExternalCallTimeout, InvalidParameters, ToolError, ToolExecutionError, ToolNotFound
from ..llm.base import ToolCall, ToolDefinition, ToolSelector
from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()

_TYPE_MAP: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _annotation(param: ToolParameter) -> Any:
    if param.enum:
        return Literal[tuple(param.enum)]
    return _TYPE_MAP.get(param.param_type, Any)


def build_parameters_model(tool: Tool) -> type[BaseModel]:
    """Compile a tool's parameters into a strict pydantic model."""
    fields: dict[str, Any] = {}
    for param in tool.parameters:
        annotation = _annotation(param)
        if param.required:
            fields[param.name] = (annotation, ...)
        else:
            fields[param.name] = (Optional[annotation], param.default)

    return create_model(
        f"{tool.name.title().replace('_', '')}Parameters",
        __config__=ConfigDict(extra="forbid", strict=True),
        **fields,
    )


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._models: dict[str, type[BaseModel]] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. Names are unique; nothing is overwritten."""
        if tool.name in self._tools:
            raise DuplicateTool(tool.name)
        if tool.handler is None:
            raise ValueError(f"Tool '{tool.name}' has no handler")
        self._models[tool.name] = build_parameters_model(tool)
        self._tools[tool.name] = tool
        logger.info("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            del self._models[name]
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for a selector."""
        return [tool.to_definition() for tool in self._tools.values()]

    def validate(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        """Validate parameters and return the handler's keyword arguments.

        Raises:
            ToolNotFound: no tool with that name
            InvalidParameters: the parameters do not match the schema
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFound(name)

        try:
            validated = self._models[name].model_validate(params)
        except ValidationError as e:
            raise InvalidParameters(name, e.errors(include_url=False)) from e

        defaults = {p.name for p in tool.parameters if p.default is not None}
        return {
            key: value
            for key, value in validated.model_dump().items()
            if key in params or key in defaults
        }


def format_result(name: str, result: ToolResult) -> str:
    """Render a tool result as context text."""
    if result.success:
        return f"[Tool result: {name}]\n{result.output}"
    return f"[Tool failed: {name}] {result.error or 'unknown error'}"


class ToolInvoker:
    """Validated, time-bounded tool execution."""

    def __init__(
        self,
        registry: ToolRegistry,
        selector: ToolSelector | None = None,
        timeout: float | None = None,
    ):
        self.registry = registry
        self.selector = selector
        self.timeout = timeout

    async def _call(self, tool: Tool, kwargs: dict[str, Any], timeout: float | None) -> Any:
        if inspect.iscoroutinefunction(tool.handler):
            pending = tool.handler(**kwargs)
        else:
            pending = asyncio.to_thread(tool.handler, **kwargs)
        value = await asyncio.wait_for(pending, timeout)
        if inspect.isawaitable(value):
            value = await asyncio.wait_for(value, timeout)
        return value

    async def invoke(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Validate and execute a tool.

        Raises:
            ToolNotFound: unknown tool
            InvalidParameters: parameters rejected; the handler is not run
            ToolExecutionError: the handler raised (original chained)
            ExternalCallTimeout: the handler did not finish in time
        """
        params = params or {}
        kwargs = self.registry.validate(name, params)
        tool = self.registry.get(name)
        timeout = timeout or self.timeout

        logger.info("Executing tool", tool_name=name, arguments=list(kwargs))
        try:
            value = await self._call(tool, kwargs, timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Tool timed out", tool_name=name, timeout=timeout)
            raise ExternalCallTimeout(f"tool:{name}", timeout or 0.0) from e
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            raise ToolExecutionError(name, e) from e

        if isinstance(value, ToolResult):
            result = value
        else:
            output = value if isinstance(value, str) else ("" if value is None else str(value))
            result = ToolResult(success=True, output=output, data=value)

        logger.info("Tool executed", tool_name=name, success=result.success)
        return result

    async def select(self, query: str, timeout: float | None = None) -> list[ToolCall]:
        """Ask the selector which registered tools apply to ``query``."""
        if self.selector is None or not self.registry.list_tools():
            return []
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(
                self.selector.select(query, self.registry.get_definitions()),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalCallTimeout("select_tools", timeout or 0.0) from e

    async def run_for_query(
        self,
        query: str,
        bind: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[tuple[ToolCall, ToolResult]]:
        """Select and run the tools relevant to a query.

        Tool-layer failures become failed results so one bad call does not
        abort the assembly. ``bind`` overrides arguments of the same name for
        tools that declare them.
        """
        calls = await self.select(query, timeout)
        results = []
        for call in calls:
            arguments = dict(call.arguments)
            tool = self.registry.get(call.name)
            if tool is not None and bind:
                arguments.update({k: v for k, v in bind.items() if tool.declares(k)})

            try:
                result = await self.invoke(call.name, arguments, timeout)
            except ToolError as e:
                logger.warning("Auto-invoked tool failed", tool_name=call.name, error=str(e))
                result = ToolResult(success=False, error=str(e))
            results.append((call, result))
        return results
