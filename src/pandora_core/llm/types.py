"""
Model-call types shared by the skill runtime, agent synthesis and the
dispatcher. Nothing here is provider specific; ``llm.openai`` maps the SDK
objects onto them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ModelTier(str, Enum):
    """Capability class a call is routed to."""

    CLASSIFY = "classify"  # cheap, high-throughput
    SYNTHESIZE = "synthesize"  # strongest available


@dataclass
class ToolCall:
    """A function call the model asked for. ``arguments`` is raw JSON text."""

    id: str
    name: str
    arguments: str

    def parse_arguments(self) -> dict[str, Any]:
        return json.loads(self.arguments) if self.arguments else {}

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class Message:
    """
    One chat message.

    Only the fields that are set end up in ``to_dict()``, so assistant
    turns that carry nothing but tool calls serialize without ``content``.
    """

    role: Role
    content: str | None = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value}
        optional = {"content": self.content, "name": self.name, "tool_call_id": self.tool_call_id}
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        return payload

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str | None = None, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(Role.ASSISTANT, content, tool_calls=tool_calls)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str, name: str | None = None) -> Message:
        return cls(Role.TOOL, content, name=name, tool_call_id=tool_call_id)


@dataclass
class Usage:
    """Prompt and completion token counts. Mutable so runs can accumulate."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: Usage | None) -> Usage:
        if other is not None:
            self.input_tokens += other.input_tokens
            self.output_tokens += other.output_tokens
        return self

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens, "total_tokens": self.total_tokens}


@dataclass
class CompletionResult:
    """
    What a ``ModelClient.complete`` call produced.

    Transport and API failures are reported in-band through ``status`` and
    ``error`` rather than raised, so callers decide whether a failed call
    fails their step.
    """

    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None
    model: str | None = None
    status: int = 200
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status == 200

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_message(self) -> Message:
        """The assistant turn to append before sending tool results back."""
        return Message.assistant(self.content, self.tool_calls)


__all__ = ["Role", "ModelTier", "ToolCall", "Message", "Usage", "CompletionResult"]
