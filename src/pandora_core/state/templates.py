"""
Deliverable template requirements and per-skill staleness thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

DAY = timedelta(days=1)
WEEK = timedelta(days=7)
MONTH = timedelta(days=30)

# Evidence older than this should be refreshed.
STALENESS_THRESHOLDS: dict[str, timedelta] = {
    "pipeline-hygiene": DAY,
    "single-thread-alert": DAY,
    "data-quality-audit": WEEK,
    "pipeline-coverage": DAY,
    "icp-discovery": MONTH,
    "lead-scoring": DAY,
    "workspace-config-audit": WEEK,
    "forecast-rollup": DAY,
    "conversation-intelligence": WEEK,
    "pipeline-waterfall": WEEK,
    "rep-scorecard": WEEK,
    "deal-risk-review": DAY,
    "weekly-recap": WEEK,
    "custom-field-discovery": MONTH,
    "contact-role-resolution": WEEK,
    "bowtie-analysis": WEEK,
    "pipeline-goals": WEEK,
    "project-recap": WEEK,
    "strategy-insights": WEEK,
}


@dataclass(frozen=True)
class TemplateRequirement:
    """
    Skills a deliverable template depends on.

    Attributes:
        required_skills: Must have evidence (any age) for the template to be ready
        preferred_skills: Missing evidence degrades dimensions instead of blocking
        freshness_critical: Stale evidence here is surfaced as a warning
    """

    template_id: str
    template_name: str
    required_skills: tuple[str, ...]
    preferred_skills: tuple[str, ...] = ()
    freshness_critical: tuple[str, ...] = ()


TEMPLATE_REQUIREMENTS: tuple[TemplateRequirement, ...] = (
    TemplateRequirement(
        template_id="sales_process_map",
        template_name="Sales Process Map",
        required_skills=("workspace-config-audit", "pipeline-hygiene"),
        preferred_skills=("pipeline-waterfall", "icp-discovery", "data-quality-audit"),
        freshness_critical=("workspace-config-audit",),
    ),
    TemplateRequirement(
        template_id="lead_scoring",
        template_name="Lead Scoring Report",
        required_skills=("lead-scoring",),
        preferred_skills=("icp-discovery",),
        freshness_critical=("lead-scoring",),
    ),
    TemplateRequirement(
        template_id="icp_profile",
        template_name="ICP Profile",
        required_skills=("icp-discovery",),
        freshness_critical=("icp-discovery",),
    ),
    TemplateRequirement(
        template_id="gtm_blueprint",
        template_name="GTM Blueprint",
        required_skills=("workspace-config-audit", "pipeline-hygiene", "icp-discovery", "lead-scoring"),
        preferred_skills=("data-quality-audit", "pipeline-waterfall"),
        freshness_critical=("pipeline-hygiene", "lead-scoring"),
    ),
    TemplateRequirement(
        template_id="pipeline_audit",
        template_name="Pipeline Audit",
        required_skills=("pipeline-hygiene", "single-thread-alert", "data-quality-audit"),
        preferred_skills=("pipeline-coverage",),
        freshness_critical=("pipeline-hygiene",),
    ),
    TemplateRequirement(
        template_id="forecast_report",
        template_name="Forecast Report",
        required_skills=("forecast-rollup",),
        preferred_skills=("pipeline-hygiene", "pipeline-coverage"),
        freshness_critical=("forecast-rollup",),
    ),
)

# Deliverable dimensions each preferred skill enables.
SKILL_TO_DIMENSIONS: dict[str, tuple[str, ...]] = {
    "icp-discovery": ("PLG Signals", "Channel/Partner", "Team Selling"),
    "pipeline-waterfall": ("Typical Duration", "Stage Regression"),
    "data-quality-audit": ("Closed Lost Capture",),
}


def format_skill_name(skill_id: str) -> str:
    return " ".join(word.capitalize() for word in skill_id.split("-"))


__all__ = [
    "STALENESS_THRESHOLDS",
    "TemplateRequirement",
    "TEMPLATE_REQUIREMENTS",
    "SKILL_TO_DIMENSIONS",
    "format_skill_name",
]
