"""
Tool system for compute steps and synthesis tool calls.

This module provides:
- Tool dataclass wrapping a sync or async handler
- ToolRegistry, the lookup table shared by the skill runtime
- ToolResult for tool outputs fed back to a model
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import ConfigurationError, ErrorCode
from ..validation import validate_against_schema


@dataclass
class ToolResult:
    """
    Standardized result from a model-requested tool call.

    Attributes:
        content: The tool's output
        success: Whether execution succeeded
        error: Error message if execution failed
    """

    content: Any = None
    success: bool = True
    error: str | None = None

    def to_string(self) -> str:
        """Convert result to string for model consumption."""
        if self.error:
            return f"Error: {self.error}"
        if isinstance(self.content, (dict, list)):
            return json.dumps(self.content, indent=2, default=str)
        return str(self.content) if self.content is not None else ""

    @classmethod
    def success_result(cls, content: Any) -> ToolResult:
        return cls(content=content, success=True)

    @classmethod
    def error_result(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


@dataclass
class Tool:
    """
    A named executable unit.

    Compute steps call ``invoke`` and let exceptions propagate to the step
    boundary. Synthesis tool loops call ``execute``, which converts failures
    into a ``ToolResult`` the model can read.

    Example:
        ```python
        def stage_durations(*, step_outputs, context, params, window_days=90):
            ...

        registry.register(Tool(
            name="stage_durations",
            description="Median days spent per pipeline stage",
            handler=stage_durations,
        ))
        ```
    """

    name: str
    handler: Callable[..., Any]
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    strict: bool = False

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI tools format."""
        tool_def: dict[str, Any] = {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Execute {self.name}",
                "parameters": self.parameters,
            },
        }
        if self.strict:
            tool_def["function"]["strict"] = True
        return tool_def

    def _accepted(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Drop runtime-injected keyword arguments the handler does not declare."""
        try:
            sig = inspect.signature(self.handler)
        except (TypeError, ValueError):
            return kwargs
        if any(p.kind is p.VAR_KEYWORD for p in sig.parameters.values()):
            return kwargs
        return {k: v for k, v in kwargs.items() if k not in _RUNTIME_PARAMS or k in sig.parameters}

    async def invoke(self, **kwargs: Any) -> Any:
        """Run the handler. Sync handlers run in a worker thread."""
        kwargs = self._accepted(kwargs)
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(**kwargs)
        result = await asyncio.to_thread(self.handler, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result

    async def execute(
        self,
        arguments: dict[str, Any] | str | None = None,
        runtime: dict[str, Any] | None = None,
    ) -> ToolResult:
        """
        Execute with model-supplied arguments.

        ``runtime`` carries the ``step_outputs``/``context``/``params`` the
        handler may declare; it is never validated against ``parameters``.

        Returns:
            ToolResult with the execution outcome
        """
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                return ToolResult.error_result(f"Invalid JSON arguments: {e}")
        args = dict(arguments or {})

        if self.strict:
            result = validate_against_schema(args, self.parameters)
            if not result.valid:
                return ToolResult.error_result(f"Tool validation failed: {'; '.join(result.errors)}")

        try:
            output = await self.invoke(**{**args, **(runtime or {})})
        except Exception as e:
            return ToolResult.error_result(f"{type(e).__name__}: {e}")

        if isinstance(output, ToolResult):
            return output
        return ToolResult.success_result(output)


class ToolRegistry:
    """
    Registry mapping tool ids to executable units.

    Constructed once at process start and passed into the skill runtime.

    Example:
        ```python
        registry = ToolRegistry()
        registry.register(stage_tool)
        tool = registry.lookup("stage_durations")
        ```
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        if tools:
            for tool in tools:
                self.register(tool)

    def register(self, tool: Tool) -> ToolRegistry:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with the same name already exists
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        return self

    def register_function(
        self,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ToolRegistry:
        """Register a plain function, using its name and docstring."""
        return self.register(tool_from_function(func, name=name, description=description))

    def lookup(self, tool_id: str) -> Tool:
        """
        Return the tool registered under ``tool_id``.

        Raises:
            ConfigurationError: If no such tool is registered
        """
        tool = self._tools.get(tool_id)
        if tool is None:
            raise ConfigurationError(f"Unknown tool: {tool_id}", code=ErrorCode.UNKNOWN_TOOL)
        return tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    @property
    def names(self) -> list[str]:
        return list(self._tools.keys())

    def to_openai_format(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Convert tools (all, or the named subset) to OpenAI format."""
        selected = names if names is not None else self.names
        return [self.lookup(name).to_openai_format() for name in selected]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | str | None,
        runtime: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Execute a model-requested tool by name. Unknown names become error results."""
        tool = self._tools.get(name)
        if not tool:
            return ToolResult.error_result(f"Unknown tool: {name}")
        return await tool.execute(arguments, runtime)


_TYPE_MAP: dict[Any, dict[str, Any]] = {
    str: {"type": "string"},
    int: {"type": "integer"},
    float: {"type": "number"},
    bool: {"type": "boolean"},
    list: {"type": "array"},
    dict: {"type": "object"},
}

# Injected by the runtime for compute steps, never exposed to a model.
_RUNTIME_PARAMS = frozenset({"step_outputs", "context", "params"})


def tool_from_function(
    func: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
) -> Tool:
    """
    Create a Tool from a function (sync or async).

    Parameter schema is built from annotations; the first docstring paragraph
    becomes the description.
    """
    sig = inspect.signature(func)
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param_name, param in sig.parameters.items():
        if param_name in _RUNTIME_PARAMS or param.kind in (param.VAR_KEYWORD, param.VAR_POSITIONAL):
            continue
        annotation = param.annotation if param.annotation is not inspect.Parameter.empty else str
        properties[param_name] = dict(_TYPE_MAP.get(annotation, {"type": "string"}))
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required

    doc = description
    if not doc and func.__doc__:
        doc = func.__doc__.split("\n\n")[0].strip()

    return Tool(
        name=name or func.__name__,
        handler=func,
        description=doc or f"Execute {func.__name__}",
        parameters=parameters,
    )


__all__ = ["Tool", "ToolResult", "ToolRegistry", "tool_from_function"]
