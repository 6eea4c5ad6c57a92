"""
Skill definition and run result types.

A skill is an ordered list of steps with declared dependencies. Each step
carries a tier-specific payload; the step's tier is derived from which
payload variant it holds.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Union

from ..llm.types import Usage
from ..storage.base import RunStatus


class StepTier(str, Enum):
    """Execution class of a step."""

    COMPUTE = "compute"  # deterministic, no model call
    CLASSIFY = "classify"  # cheap structured model call
    SYNTHESIZE = "synthesize"  # expensive free-form model call


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutputFormat(str, Enum):
    SLACK = "slack"
    MARKDOWN = "markdown"
    JSON = "json"
    STRUCTURED = "structured"


# =============================================================================
# Step payloads
# =============================================================================


@dataclass(frozen=True)
class ComputeStep:
    """Call a registered tool with static args."""

    tool_id: str
    args: dict[str, Any] = field(default_factory=dict)

    tier = StepTier.COMPUTE


@dataclass(frozen=True)
class ClassifyStep:
    """Render a prompt, call the low-cost tier, validate the JSON response."""

    prompt: str
    schema: dict[str, Any]
    max_tokens: int = 4096
    system_prompt: str | None = None

    tier = StepTier.CLASSIFY


@dataclass(frozen=True)
class SynthesizeStep:
    """Render a prompt and call the high-capability tier, optionally with tools."""

    prompt: str
    tools: tuple[str, ...] = ()
    max_tool_calls: int | None = None
    max_tokens: int = 4096
    system_prompt: str | None = None

    tier = StepTier.SYNTHESIZE


StepPayload = Union[ComputeStep, ClassifyStep, SynthesizeStep]


@dataclass(frozen=True)
class StepDefinition:
    """
    One step of a skill.

    Attributes:
        id: Unique within the skill
        payload: Tier-specific execution payload
        depends_on: Ids of earlier steps whose outputs this step reads
        output_key: Key the step's result is stored under (defaults to ``id``)
        timeout_seconds: Optional per-step deadline
    """

    id: str
    payload: StepPayload
    depends_on: tuple[str, ...] = ()
    output_key: str = ""
    name: str = ""
    timeout_seconds: float | None = None

    def __post_init__(self):
        if not self.output_key:
            object.__setattr__(self, "output_key", self.id)
        if not self.name:
            object.__setattr__(self, "name", self.id.replace("-", " ").replace("_", " ").title())
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def tier(self) -> StepTier:
        return self.payload.tier

    @property
    def prompt(self) -> str | None:
        if isinstance(self.payload, (ClassifyStep, SynthesizeStep)):
            return self.payload.prompt
        return None


@dataclass(frozen=True)
class SkillSchedule:
    """Scheduling metadata. The runtime never acts on it; an external trigger does."""

    cron: str | None = None
    trigger: str = "on_demand"
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class SkillDefinition:
    """
    A declared analytical pipeline.

    ``critical_steps`` name the steps whose success decides whether the run
    failed. ``None`` means the last declared step. A run is ``failed`` when
    any critical step or anything it transitively depends on did not complete.
    """

    id: str
    name: str
    steps: tuple[StepDefinition, ...]
    description: str = ""
    version: str = "1.0.0"
    category: str = ""
    required_context: tuple[str, ...] = ()
    required_tools: tuple[str, ...] = ()
    optional_tools: tuple[str, ...] = ()
    schedule: SkillSchedule = field(default_factory=SkillSchedule)
    output_format: OutputFormat = OutputFormat.MARKDOWN
    staleness_threshold: timedelta | None = None
    critical_steps: tuple[str, ...] | None = None

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))

    @property
    def terminal_step(self) -> StepDefinition | None:
        return self.steps[-1] if self.steps else None

    def step(self, step_id: str) -> StepDefinition:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


# =============================================================================
# Results
# =============================================================================


@dataclass
class SkillEvidence:
    """
    Evidence bundle produced by a skill run.

    Claims are dicts with at least ``claim_id``, ``claim_text`` and
    ``severity``; they may carry ``metric_name``, ``metric_values`` and
    ``entity_ids``. Evaluated records are flat dicts, one per entity.
    """

    claims: list[dict[str, Any]] = field(default_factory=list)
    evaluated_records: list[dict[str, Any]] = field(default_factory=list)
    data_sources: list[dict[str, Any]] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.claims and not self.evaluated_records

    def to_dict(self) -> dict[str, Any]:
        return {
            "claims": self.claims,
            "evaluated_records": self.evaluated_records,
            "data_sources": self.data_sources,
            "parameters": self.parameters,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SkillEvidence:
        data = data or {}
        return cls(
            claims=list(data.get("claims") or []),
            evaluated_records=list(data.get("evaluated_records") or []),
            data_sources=list(data.get("data_sources") or []),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class StepResult:
    """Outcome of one step."""

    step_id: str
    tier: StepTier
    output_key: str
    status: StepStatus = StepStatus.PENDING
    duration_ms: int = 0
    usage: Usage = field(default_factory=Usage)
    tool_calls: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "tier": self.tier.value,
            "output_key": self.output_key,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "usage": self.usage.to_dict(),
            "tool_calls": self.tool_calls,
            "error": self.error,
        }


@dataclass
class SkillRunResult:
    """Result of one skill run. A rerun produces a new result with a new run id."""

    run_id: str
    workspace_id: str
    skill_id: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    step_results: dict[str, StepResult] = field(default_factory=dict)
    step_outputs: dict[str, Any] = field(default_factory=dict)
    token_usage: dict[StepTier, Usage] = field(
        default_factory=lambda: {StepTier.CLASSIFY: Usage(), StepTier.SYNTHESIZE: Usage()}
    )
    tool_call_count: int = 0

    narrative: str | None = None
    evidence: SkillEvidence = field(default_factory=SkillEvidence)
    errors: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return sum(u.total_tokens for u in self.token_usage.values())

    def token_summary(self) -> dict[str, int]:
        summary = {tier.value: usage.total_tokens for tier, usage in self.token_usage.items()}
        summary["total"] = self.total_tokens
        return summary

    def to_output(self) -> dict[str, Any]:
        """Serializable payload stored as the run's output."""
        return {
            "narrative": self.narrative,
            "evidence": self.evidence.to_dict(),
            "step_outputs": json.loads(json.dumps(self.step_outputs, default=str)),
            "steps": {step_id: r.to_dict() for step_id, r in self.step_results.items()},
            "tool_call_count": self.tool_call_count,
            "errors": list(self.errors),
        }


__all__ = [
    "StepTier",
    "StepStatus",
    "OutputFormat",
    "ComputeStep",
    "ClassifyStep",
    "SynthesizeStep",
    "StepPayload",
    "StepDefinition",
    "SkillSchedule",
    "SkillDefinition",
    "SkillEvidence",
    "StepResult",
    "SkillRunResult",
]
