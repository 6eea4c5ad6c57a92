"""
Tool registry for compute steps and synthesis tool calls.
"""

from .base import Tool, ToolRegistry, ToolResult, tool_from_function

__all__ = ["Tool", "ToolRegistry", "ToolResult", "tool_from_function"]
