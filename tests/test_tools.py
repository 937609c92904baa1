"""
Tests for tools module.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from context_engine.errors import (
    DuplicateTool,
    ExternalCallTimeout,
    InvalidParameters,
    ToolExecutionError,
    ToolNotFound,
)
from context_engine.llm.base import ToolCall
from context_engine.tools import Tool, ToolInvoker, ToolParameter, ToolRegistry, ToolResult, format_result


def weather_tool(handler=None) -> Tool:
    async def lookup(city: str, units: str = "celsius", days: int | None = None) -> ToolResult:
        return ToolResult(success=True, output=f"{city}: 21 {units}", data={"days": days})

    return Tool(
        name="weather",
        description="Look up the weather for a city",
        parameters=[
            ToolParameter(name="city", param_type="string", description="City name"),
            ToolParameter(
                name="units",
                param_type="string",
                description="Temperature units",
                required=False,
                default="celsius",
                enum=["celsius", "fahrenheit"],
            ),
            ToolParameter(name="days", param_type="integer", description="Forecast days", required=False),
        ],
        handler=handler or lookup,
    )


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register(weather_tool())
    return registry


def test_tool_result_success():
    """Test successful tool result."""
    result = ToolResult(success=True, output="Test output", data={"key": "value"})

    assert result.success is True
    assert result.output == "Test output"
    assert result.data == {"key": "value"}
    assert result.error is None


def test_tool_result_failure():
    """Test failed tool result."""
    result = ToolResult(success=False, output="", error="Something went wrong")

    assert result.success is False
    assert result.error == "Something went wrong"


def test_tool_to_definition():
    """Test converting a tool to a selector definition."""
    definition = weather_tool().to_definition()

    assert definition.name == "weather"
    assert definition.parameters["required"] == ["city"]
    assert definition.parameters["properties"]["units"]["enum"] == ["celsius", "fahrenheit"]
    assert definition.parameters["properties"]["units"]["default"] == "celsius"
    assert definition.parameters["additionalProperties"] is False


def test_register_rejects_duplicates(registry):
    """Test that a name can only be registered once."""
    with pytest.raises(DuplicateTool):
        registry.register(weather_tool())

    assert registry.list_tools() == ["weather"]


def test_register_requires_handler():
    """Test that a tool without a handler is refused."""
    with pytest.raises(ValueError):
        ToolRegistry().register(Tool(name="noop", description="does nothing"))


def test_unregister(registry):
    """Test removing a tool."""
    registry.unregister("weather")
    registry.unregister("weather")

    assert registry.get("weather") is None
    assert registry.get_definitions() == []


@pytest.mark.asyncio
async def test_invoke_applies_defaults(registry):
    """Test a valid invocation and default filling."""
    result = await ToolInvoker(registry).invoke("weather", {"city": "Lisbon"})

    assert result.success is True
    assert result.output == "Lisbon: 21 celsius"
    assert result.data == {"days": None}


@pytest.mark.asyncio
async def test_invoke_unknown_tool(registry):
    """Test that unknown names are reported."""
    with pytest.raises(ToolNotFound):
        await ToolInvoker(registry).invoke("forecast", {"city": "Lisbon"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {},
        {"city": "Lisbon", "country": "PT"},
        {"city": 42},
        {"city": "Lisbon", "units": "kelvin"},
        {"city": "Lisbon", "days": "3"},
    ],
    ids=["missing", "extra", "wrong-type", "bad-enum", "no-coercion"],
)
async def test_invalid_parameters_do_not_run_handler(params):
    """Test that schema violations are rejected before the handler runs."""
    handler = AsyncMock(return_value=ToolResult(success=True))
    registry = ToolRegistry()
    registry.register(weather_tool(handler))

    with pytest.raises(InvalidParameters) as exc_info:
        await ToolInvoker(registry).invoke("weather", params)

    assert exc_info.value.errors
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_handler_exception_is_wrapped():
    """Test that handler failures keep the original exception."""

    async def broken(city: str, **_):
        raise RuntimeError("service down")

    registry = ToolRegistry()
    registry.register(weather_tool(broken))

    with pytest.raises(ToolExecutionError) as exc_info:
        await ToolInvoker(registry).invoke("weather", {"city": "Lisbon"})

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert "service down" in str(exc_info.value)


@pytest.mark.asyncio
async def test_slow_handler_times_out():
    """Test that a handler exceeding its timeout raises ExternalCallTimeout."""

    async def slow(city: str, **_):
        await asyncio.sleep(1)

    registry = ToolRegistry()
    registry.register(weather_tool(slow))

    with pytest.raises(ExternalCallTimeout) as exc_info:
        await ToolInvoker(registry, timeout=5).invoke("weather", {"city": "Lisbon"}, timeout=0.01)

    assert exc_info.value.operation == "tool:weather"


@pytest.mark.asyncio
async def test_sync_handler_and_plain_return_value():
    """Test that plain functions run and plain values are wrapped."""

    def lookup(city: str, **_):
        return f"sunny in {city}"

    registry = ToolRegistry()
    registry.register(weather_tool(lookup))

    result = await ToolInvoker(registry).invoke("weather", {"city": "Porto"})

    assert result.success is True
    assert result.output == "sunny in Porto"


def test_format_result():
    """Test the context rendering of results."""
    assert format_result("weather", ToolResult(success=True, output="sunny")) == "[Tool result: weather]\nsunny"
    assert format_result("weather", ToolResult(success=False, error="down")) == "[Tool failed: weather] down"


@pytest.mark.asyncio
async def test_run_for_query_uses_selector(registry):
    """Test selection, execution and failure capture for a query."""
    selector = AsyncMock()
    selector.select = AsyncMock(return_value=[
        ToolCall(id="1", name="weather", arguments={"city": "Lisbon"}),
        ToolCall(id="2", name="weather", arguments={"city": 7}),
    ])
    invoker = ToolInvoker(registry, selector=selector)

    results = await invoker.run_for_query("weather in lisbon?")

    assert [result.success for _, result in results] == [True, False]
    assert "Invalid parameters" in results[1][1].error
    definitions = selector.select.await_args.args[1]
    assert [d.name for d in definitions] == ["weather"]


@pytest.mark.asyncio
async def test_run_for_query_binds_declared_arguments():
    """Test that bound arguments override only declared parameters."""
    seen = {}

    async def lookup(city: str, **_):
        seen["city"] = city
        return "ok"

    registry = ToolRegistry()
    registry.register(weather_tool(lookup))
    selector = AsyncMock()
    selector.select = AsyncMock(return_value=[ToolCall(id="1", name="weather", arguments={"city": "Paris"})])

    results = await ToolInvoker(registry, selector=selector).run_for_query(
        "weather", bind={"city": "Lisbon", "user_id": "alice"}
    )

    assert results[0][1].success is True
    assert seen == {"city": "Lisbon"}


@pytest.mark.asyncio
async def test_run_for_query_without_selector(registry):
    """Test that no selector means no tool runs."""
    assert await ToolInvoker(registry).run_for_query("anything") == []


@pytest.mark.asyncio
async def test_selector_timeout(registry):
    """Test that a slow selector raises ExternalCallTimeout."""

    async def slow_select(query, tools):
        await asyncio.sleep(1)
        return []

    selector = AsyncMock()
    selector.select = slow_select

    with pytest.raises(ExternalCallTimeout):
        await ToolInvoker(registry, selector=selector).run_for_query("weather", timeout=0.01)
