"""
Pytest configuration and shared fixtures for pandora-core tests.

This module provides:
- Scripted model client for deterministic completions
- Recording delivery channel and a store whose writes always fail
- Factory functions for completions, tool calls and skill definitions
- A controllable clock for TTL and recovery-window tests
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Union

import pytest

from pandora_core.delivery.base import DeliveryChannel
from pandora_core.errors import DeliveryError, PersistenceError
from pandora_core.llm.base import ModelRouter
from pandora_core.llm.types import CompletionResult, ModelTier, ToolCall, Usage
from pandora_core.skills.registry import SkillRegistry
from pandora_core.skills.runtime import SkillRuntime
from pandora_core.skills.types import (
    ClassifyStep,
    ComputeStep,
    SkillDefinition,
    StepDefinition,
    SynthesizeStep,
)
from pandora_core.storage.base import RunKind, RunRecord, RunStatus, RunStore
from pandora_core.storage.memory import InMemoryRunStore
from pandora_core.tools.base import Tool, ToolRegistry

# =============================================================================
# Factories
# =============================================================================


def make_usage(input_tokens: int = 10, output_tokens: int = 5) -> Usage:
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens)


def make_completion_result(
    content: str | None = "Hello! How can I help you today?",
    tool_calls: list[ToolCall] | None = None,
    usage: Usage | None = None,
    status: int = 200,
    error: str | None = None,
) -> CompletionResult:
    """Create a CompletionResult for testing."""
    return CompletionResult(
        content=content,
        tool_calls=tool_calls,
        usage=usage or make_usage(),
        finish_reason="tool_calls" if tool_calls else "stop",
        model="fake-model",
        status=status,
        error=error,
    )


def make_tool_call(name: str, arguments: str = "{}", call_id: str | None = None) -> ToolCall:
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments)


def make_run_record(
    workspace_id: str,
    skill_id: str,
    *,
    completed_at: datetime,
    evidence: dict[str, Any] | None = None,
    status: RunStatus = RunStatus.COMPLETED,
    run_id: str | None = None,
) -> RunRecord:
    """A finished skill run as it would sit in run history."""
    return RunRecord(
        run_id=run_id or f"run_{skill_id}_{completed_at.timestamp():.0f}",
        workspace_id=workspace_id,
        kind=RunKind.SKILL,
        target_id=skill_id,
        status=status,
        started_at=completed_at - timedelta(seconds=5),
        completed_at=completed_at,
        duration_ms=5000,
        output={"evidence": evidence if evidence is not None else {"claims": [], "evaluated_records": []}},
    )


CLASSIFY_SCHEMA = {
    "type": "object",
    "properties": {
        "risk_level": {"type": "string", "enum": ["low", "medium", "high"]},
        "at_risk": {"type": "integer"},
    },
    "required": ["risk_level", "at_risk"],
}


def make_pipeline_hygiene(
    *,
    critical_steps: tuple[str, ...] | None = None,
    timeout_seconds: float | None = None,
) -> SkillDefinition:
    """
    Four-step skill used across runtime tests.

    A (``count_deals``) and B (``find_stale``) are independent compute steps,
    C classifies both outputs and D writes the report from C.
    """
    return SkillDefinition(
        id="pipeline-hygiene",
        name="Pipeline Hygiene",
        steps=(
            StepDefinition(id="A", payload=ComputeStep(tool_id="count_deals"), output_key="deal_counts"),
            StepDefinition(
                id="B",
                payload=ComputeStep(tool_id="find_stale", args={"days": 30}),
                output_key="stale_deals",
                timeout_seconds=timeout_seconds,
            ),
            StepDefinition(
                id="C",
                payload=ClassifyStep(
                    prompt="Counts: {{ deal_counts }}\nStale: {{ stale_deals }}",
                    schema=CLASSIFY_SCHEMA,
                ),
                depends_on=("A", "B"),
                output_key="classification",
            ),
            StepDefinition(
                id="D",
                payload=SynthesizeStep(prompt="Write a hygiene report.\n{{ classification }}"),
                depends_on=("C",),
                output_key="report",
            ),
        ),
        critical_steps=critical_steps,
    )


# =============================================================================
# Model client
# =============================================================================


Scripted = Union[CompletionResult, BaseException, Callable[[dict[str, Any]], CompletionResult]]


class FakeModelClient:
    """
    Model client returning scripted results in order.

    Each scripted entry is a ``CompletionResult``, an exception to raise,
    or a callable receiving the recorded call. The last entry repeats once
    the script runs out.
    """

    def __init__(self, responses: list[Scripted] | None = None, *, delay: float = 0.0):
        self._responses: list[Scripted] = list(responses or [make_completion_result()])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt,
        messages,
        *,
        max_tokens,
        temperature,
        tools=None,
        response_format=None,
    ) -> CompletionResult:
        call = {
            "system_prompt": system_prompt,
            "messages": list(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "tools": tools,
            "response_format": response_format,
        }
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        scripted = self._responses[min(len(self.calls) - 1, len(self._responses) - 1)]
        if isinstance(scripted, BaseException):
            raise scripted
        if callable(scripted):
            return scripted(call)
        return scripted

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def prompt(self, index: int = -1) -> str:
        """User prompt of a recorded call."""
        return self.calls[index]["messages"][0].content


class TieredModels:
    """Separate fake clients for the two tiers, routed by ``ModelRouter``."""

    def __init__(self, classify: FakeModelClient, synthesize: FakeModelClient):
        self.classify = classify
        self.synthesize = synthesize
        self.router = ModelRouter({ModelTier.CLASSIFY: classify, ModelTier.SYNTHESIZE: synthesize})


# =============================================================================
# Store / channel doubles
# =============================================================================


class FailingStore(RunStore):
    """Run store whose writes always fail."""

    def __init__(self) -> None:
        self.attempts = 0

    async def insert_run(self, record: RunRecord) -> None:
        self.attempts += 1
        raise PersistenceError("database unavailable")

    async def update_run(self, record: RunRecord) -> None:
        self.attempts += 1
        raise PersistenceError("database unavailable")

    async def get_run(self, run_id: str) -> RunRecord | None:
        return None

    async def latest_run(self, workspace_id: str, skill_id: str) -> RunRecord | None:
        return None

    async def latest_runs_per_skill(self, workspace_id: str) -> dict[str, RunRecord]:
        return {}

    async def runs_since(self, workspace_id, since, *, kind=None, target_id=None) -> list[RunRecord]:
        return []


class RecordingChannel(DeliveryChannel):
    """Delivery channel that keeps every post in memory."""

    name = "slack"

    def __init__(self, max_message_chars: int = 3000, *, fail: bool = False):
        self.max_message_chars = max_message_chars
        self.fail = fail
        self.texts: list[tuple[str, str | None]] = []
        self.blocks: list[list[dict[str, Any]]] = []
        self.closed = False

    async def post_text(self, text: str, *, target: str | None = None) -> None:
        if self.fail:
            raise DeliveryError("channel rejected the message", http_status=500)
        self.texts.append((text, target))

    async def post_blocks(self, blocks, *, target: str | None = None) -> None:
        if self.fail:
            raise DeliveryError("channel rejected the message", http_status=500)
        self.blocks.append(list(blocks))

    async def close(self) -> None:
        self.closed = True


@dataclass
class FixedClock:
    """Clock that only moves when told to."""

    now: datetime = field(default_factory=lambda: datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def hygiene_tools():
    """Tools behind the pipeline-hygiene compute steps. ``state["fail_b"]`` makes B raise."""
    state: dict[str, Any] = {"fail_b": False, "b_delay": 0.0, "calls": []}

    async def count_deals(*, params):
        state["calls"].append("count_deals")
        return {"open": 42, "window": params.get("window_days", 90)}

    async def find_stale(days: int, *, step_outputs):
        state["calls"].append("find_stale")
        state["b_saw"] = dict(step_outputs)
        if state["b_delay"]:
            await asyncio.sleep(state["b_delay"])
        if state["fail_b"]:
            raise RuntimeError("CRM query failed")
        return [{"deal_name": "Acme Renewal", "days_in_stage": days + 12}]

    tools = ToolRegistry(
        [
            Tool(name="count_deals", handler=count_deals, description="Count open deals"),
            Tool(name="find_stale", handler=find_stale, description="Deals idle past a threshold"),
        ]
    )
    return tools, state


@pytest.fixture
def classify_client():
    return FakeModelClient([make_completion_result('{"risk_level": "high", "at_risk": 3}')])


@pytest.fixture
def synthesize_client():
    return FakeModelClient([make_completion_result("Three deals need attention.")])


@pytest.fixture
def models(classify_client, synthesize_client):
    return TieredModels(classify_client, synthesize_client).router


@pytest.fixture
def skill_registry(hygiene_tools):
    tools, _ = hygiene_tools
    return SkillRegistry(tools, skills=[make_pipeline_hygiene()])


@pytest.fixture
def skill_runtime(hygiene_tools, skill_registry, models, store):
    tools, _ = hygiene_tools
    return SkillRuntime(tools=tools, skills=skill_registry, models=models, store=store)
