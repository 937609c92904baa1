"""
Tool registration and validated invocation.
"""

from .base import Tool, ToolDescriptor, ToolParameter, ToolResult
from .registry import ToolInvoker, ToolRegistry, build_parameters_model, format_result

__all__ = [
    "Tool",
    "ToolDescriptor",
    "ToolParameter",
    "ToolResult",
    "ToolInvoker",
    "ToolRegistry",
    "build_parameters_model",
    "format_result",
]
