"""
Agent definition and run result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..skills.types import SkillRunResult, StepStatus
from ..storage.base import RunStatus


class AgentStatus(str, Enum):
    """Lifecycle state of an agent definition."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PUBLISHED = "published"
    ARCHIVED = "archived"


# Allowed lifecycle transitions.
VALID_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.DRAFT: frozenset({AgentStatus.PENDING_REVIEW}),
    AgentStatus.PENDING_REVIEW: frozenset({AgentStatus.PUBLISHED, AgentStatus.DRAFT}),
    AgentStatus.PUBLISHED: frozenset({AgentStatus.ARCHIVED}),
    AgentStatus.ARCHIVED: frozenset({AgentStatus.PUBLISHED}),
}

# Synthesis slots every agent provides, besides one per step output key.
SYNTHESIS_SLOTS = frozenset({"skill_outputs", "agent_name", "workspace_id"})


@dataclass(frozen=True)
class AgentSkillStep:
    """
    One skill invocation inside an agent.

    Attributes:
        skill_id: Registered skill to run
        required: A failed required step aborts the agent
        output_key: Slot name the skill's output is exposed under (defaults to ``skill_id``)
        timeout_seconds: Deadline for the whole skill run; ``None`` uses the runtime default
        params: Run parameters passed to the skill
    """

    skill_id: str
    required: bool = True
    output_key: str = ""
    timeout_seconds: float | None = None
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.output_key:
            object.__setattr__(self, "output_key", self.skill_id)


@dataclass(frozen=True)
class SynthesisConfig:
    enabled: bool = True
    system_prompt: str = (
        "You are a revenue operations analyst. Combine the findings below into one concise briefing. "
        "Lead with what needs attention, reference actual names and numbers, and do not invent data."
    )
    prompt_template: str = "{{ skill_outputs }}"
    max_tokens: int = 4000


@dataclass(frozen=True)
class DeliveryTarget:
    """Where an agent's narrative goes. ``format`` is ``"text"`` or ``"blocks"``."""

    channel: str = "slack"
    format: str = "text"
    target: str | None = None


@dataclass(frozen=True)
class AgentDefinition:
    """
    A composition of skills plus synthesis and delivery.

    Definitions are replaced whole on update; a run pins the object it
    resolved at start.
    """

    id: str
    name: str
    skills: tuple[AgentSkillStep, ...]
    description: str = ""
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    delivery: DeliveryTarget = field(default_factory=DeliveryTarget)
    enabled: bool = True
    workspace_ids: tuple[str, ...] = ()
    status: AgentStatus = AgentStatus.DRAFT
    owner_id: str | None = None
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    recoverable_until: datetime | None = None

    def __post_init__(self):
        object.__setattr__(self, "skills", tuple(self.skills))
        object.__setattr__(self, "workspace_ids", tuple(self.workspace_ids))

    def applies_to(self, workspace_id: str) -> bool:
        """Empty scope means every workspace."""
        return not self.workspace_ids or workspace_id in self.workspace_ids


# =============================================================================
# Results
# =============================================================================


@dataclass
class AgentStepResult:
    """Outcome of one agent skill step."""

    skill_id: str
    output_key: str
    required: bool
    status: StepStatus = StepStatus.PENDING
    run_id: str | None = None
    duration_ms: int = 0
    total_tokens: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "output_key": self.output_key,
            "required": self.required,
            "status": self.status.value,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
            "total_tokens": self.total_tokens,
            "error": self.error,
        }


@dataclass
class DeliveryOutcome:
    """``status`` is ``delivered``, ``failed`` or ``skipped``."""

    status: str = "skipped"
    channel: str | None = None
    messages: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "channel": self.channel, "messages": self.messages, "error": self.error}


@dataclass
class AgentRunResult:
    run_id: str
    agent_id: str
    workspace_id: str
    agent_version: int = 1
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    skill_results: list[AgentStepResult] = field(default_factory=list)
    skill_outputs: dict[str, SkillRunResult] = field(default_factory=dict)
    synthesized_output: str | None = None
    synthesis_tokens: int = 0
    delivery: DeliveryOutcome = field(default_factory=DeliveryOutcome)
    error: str | None = None
    dry_run: bool = False

    @property
    def skill_tokens(self) -> int:
        return sum(r.total_tokens for r in self.skill_results)

    @property
    def token_usage(self) -> dict[str, int]:
        return {
            "skills": self.skill_tokens,
            "synthesis": self.synthesis_tokens,
            "total": self.skill_tokens + self.synthesis_tokens,
        }

    def step(self, skill_id: str) -> AgentStepResult | None:
        for result in self.skill_results:
            if result.skill_id == skill_id:
                return result
        return None

    def to_output(self) -> dict[str, Any]:
        """Serializable payload stored as the run's output."""
        return {
            "agent_version": self.agent_version,
            "skill_results": [r.to_dict() for r in self.skill_results],
            "skill_runs": {key: run.run_id for key, run in self.skill_outputs.items()},
            "synthesized_output": self.synthesized_output,
            "delivery": self.delivery.to_dict(),
            "dry_run": self.dry_run,
        }


__all__ = [
    "AgentStatus",
    "VALID_TRANSITIONS",
    "SYNTHESIS_SLOTS",
    "AgentSkillStep",
    "SynthesisConfig",
    "DeliveryTarget",
    "AgentDefinition",
    "AgentStepResult",
    "DeliveryOutcome",
    "AgentRunResult",
]
