"""
Router decision and execution result types.

Intent classification happens upstream; the dispatcher only consumes the
resulting ``RouterDecision``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class RequestType(str, Enum):
    EVIDENCE_INQUIRY = "evidence_inquiry"
    SCOPED_ANALYSIS = "scoped_analysis"
    DELIVERABLE_REQUEST = "deliverable_request"
    SKILL_EXECUTION = "skill_execution"


@dataclass
class RouterDecision:
    """
    A pre-classified request.

    Which fields matter depends on ``type``:

    - ``evidence_inquiry``: ``target_skill``, ``target_metric``, ``target_entity_id``
    - ``scoped_analysis``: ``skills_to_consult``, ``scope_question``, ``scope_type``, ``scope_entity``
    - ``deliverable_request``: ``deliverable_type`` or ``template_id``
    - ``skill_execution``: ``skill_id``, ``skill_params``
    """

    type: str
    confidence: float = 1.0

    target_skill: str | None = None
    target_metric: str | None = None
    target_entity_id: str | None = None

    skills_to_consult: list[str] = field(default_factory=list)
    scope_question: str | None = None
    scope_type: str | None = None
    scope_entity: str | None = None

    deliverable_type: str | None = None
    template_id: str | None = None

    skill_id: str | None = None
    skill_params: dict[str, Any] = field(default_factory=dict)

    stale_skills_to_rerun: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouterDecision:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ExecutionResult:
    type: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    tokens_used: int = 0
    duration_ms: int | None = None

    @classmethod
    def failure(cls, type: str, error: str, data: dict[str, Any] | None = None) -> ExecutionResult:
        return cls(type=type, success=False, error=error, data=data)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        result["tokens_used"] = self.tokens_used
        result["duration_ms"] = self.duration_ms
        return result


@dataclass
class DeliverableResult:
    """What a deliverable pipeline hands back to the dispatcher."""

    summary: dict[str, Any]
    payload: Any
    tokens_used: int = 0
    duration_ms: int | None = None


class DeliverablePipeline(Protocol):
    """Assembles a deliverable for a ready template. Implemented outside this package."""

    async def __call__(self, workspace_id: str, template_id: str) -> DeliverableResult: ...


__all__ = ["RequestType", "RouterDecision", "ExecutionResult", "DeliverableResult", "DeliverablePipeline"]
