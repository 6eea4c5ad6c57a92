"""Agent definitions, lifecycle registry and runtime."""

from .registry import RECOVERY_WINDOW, AgentRegistry
from .runtime import AgentRuntime, skill_output_text
from .types import (
    VALID_TRANSITIONS,
    AgentDefinition,
    AgentRunResult,
    AgentSkillStep,
    AgentStatus,
    AgentStepResult,
    DeliveryOutcome,
    DeliveryTarget,
    SynthesisConfig,
)

__all__ = [
    "RECOVERY_WINDOW",
    "VALID_TRANSITIONS",
    "AgentDefinition",
    "AgentRegistry",
    "AgentRunResult",
    "AgentRuntime",
    "AgentSkillStep",
    "AgentStatus",
    "AgentStepResult",
    "DeliveryOutcome",
    "DeliveryTarget",
    "SynthesisConfig",
    "skill_output_text",
]
