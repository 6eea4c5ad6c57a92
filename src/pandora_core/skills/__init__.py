"""Skill definitions, graph validation and the DAG runtime."""

from .evidence import EvidenceBuilder, EvidenceBundle, EvidenceRegistry, collect_evidence
from .graph import StepGraph, validate_steps
from .registry import SkillRegistry
from .runtime import SkillRuntime, default_system_prompt
from .types import (
    ClassifyStep,
    ComputeStep,
    OutputFormat,
    SkillDefinition,
    SkillEvidence,
    SkillRunResult,
    SkillSchedule,
    StepDefinition,
    StepPayload,
    StepResult,
    StepStatus,
    StepTier,
    SynthesizeStep,
)

__all__ = [
    "ClassifyStep",
    "ComputeStep",
    "EvidenceBuilder",
    "EvidenceBundle",
    "EvidenceRegistry",
    "OutputFormat",
    "SkillDefinition",
    "SkillEvidence",
    "SkillRegistry",
    "SkillRunResult",
    "SkillRuntime",
    "SkillSchedule",
    "StepDefinition",
    "StepGraph",
    "StepPayload",
    "StepResult",
    "StepStatus",
    "StepTier",
    "SynthesizeStep",
    "collect_evidence",
    "default_system_prompt",
    "validate_steps",
]
