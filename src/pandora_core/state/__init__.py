"""Workspace state index: evidence freshness and template readiness."""

from .index import (
    SkillState,
    TemplateReadiness,
    WorkspaceStateIndex,
    WorkspaceStateService,
    template_readiness,
)
from .templates import (
    SKILL_TO_DIMENSIONS,
    STALENESS_THRESHOLDS,
    TEMPLATE_REQUIREMENTS,
    TemplateRequirement,
    format_skill_name,
)

__all__ = [
    "SKILL_TO_DIMENSIONS",
    "STALENESS_THRESHOLDS",
    "TEMPLATE_REQUIREMENTS",
    "SkillState",
    "TemplateReadiness",
    "TemplateRequirement",
    "WorkspaceStateIndex",
    "WorkspaceStateService",
    "format_skill_name",
    "template_readiness",
]
