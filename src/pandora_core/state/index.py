"""
Workspace state index.

A derived, per-workspace snapshot of which skills have evidence, which
evidence is stale, and which deliverable templates can be produced. It is
rebuilt from run history and cached for a short TTL. Skill completions and
data syncs call ``invalidate`` so the next read recomputes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import StateIndexConfig
from ..skills.registry import SkillRegistry
from ..storage.base import RunRecord, RunStore
from .templates import (
    SKILL_TO_DIMENSIONS,
    STALENESS_THRESHOLDS,
    TEMPLATE_REQUIREMENTS,
    TemplateRequirement,
    format_skill_name,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SkillState:
    skill_id: str
    skill_name: str
    has_evidence: bool = False
    is_stale: bool = True
    last_run: datetime | None = None
    claim_count: int = 0
    record_count: int = 0
    run_duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_run"] = self.last_run.isoformat() if self.last_run else None
        return data


@dataclass
class TemplateReadiness:
    template_id: str
    template_name: str
    ready: bool
    missing_skills: list[str] = field(default_factory=list)
    stale_skills: list[str] = field(default_factory=list)
    degraded_dimensions: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkspaceStateIndex:
    """Snapshot of a workspace. Never a source of truth."""

    workspace_id: str
    computed_at: datetime
    skill_states: dict[str, SkillState] = field(default_factory=dict)
    template_readiness: dict[str, TemplateReadiness] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "computed_at": self.computed_at.isoformat(),
            "skill_states": {k: v.to_dict() for k, v in self.skill_states.items()},
            "template_readiness": {k: v.to_dict() for k, v in self.template_readiness.items()},
        }


def template_readiness(
    template: TemplateRequirement,
    skill_states: dict[str, SkillState],
    dimensions: dict[str, tuple[str, ...]] = SKILL_TO_DIMENSIONS,
) -> TemplateReadiness:
    """Readiness of one template. Staleness warns, it never blocks."""

    def has_evidence(skill_id: str) -> bool:
        state = skill_states.get(skill_id)
        return state is not None and state.has_evidence

    missing = [s for s in template.required_skills if not has_evidence(s)]
    stale = [s for s in template.freshness_critical if s in skill_states and skill_states[s].is_stale]

    degraded: list[str] = []
    for skill_id in template.preferred_skills:
        if not has_evidence(skill_id):
            for dimension in dimensions.get(skill_id, ()):
                if dimension not in degraded:
                    degraded.append(dimension)

    ready = not missing
    if not ready:
        reason = f"Missing required skills: {', '.join(missing)}. Run these skills first."
    elif stale:
        reason = f"Evidence is stale for: {', '.join(stale)}. Results may not reflect recent changes."
    elif degraded:
        reason = f"Some dimensions will be limited: {', '.join(degraded)}."
    else:
        reason = None

    return TemplateReadiness(
        template_id=template.template_id,
        template_name=template.template_name,
        ready=ready,
        missing_skills=missing,
        stale_skills=stale,
        degraded_dimensions=degraded,
        reason=reason,
    )


class WorkspaceStateService:
    """
    Computes and caches ``WorkspaceStateIndex`` snapshots.

    Example:
        ```python
        states = WorkspaceStateService(store, skills)
        index = await states.get_state("ws_1")
        index.template_readiness["pipeline_audit"].ready
        states.invalidate("ws_1")   # after a skill run completes
        ```
    """

    def __init__(
        self,
        store: RunStore,
        skills: SkillRegistry | None = None,
        *,
        templates: Iterable[TemplateRequirement] = TEMPLATE_REQUIREMENTS,
        thresholds: dict[str, timedelta] | None = None,
        dimensions: dict[str, tuple[str, ...]] | None = None,
        config: StateIndexConfig | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.skills = skills
        self.templates: dict[str, TemplateRequirement] = {t.template_id: t for t in templates}
        self.thresholds = dict(STALENESS_THRESHOLDS if thresholds is None else thresholds)
        self.dimensions = dict(SKILL_TO_DIMENSIONS if dimensions is None else dimensions)
        self.config = config or StateIndexConfig()
        self._clock = clock
        self._cache: dict[str, tuple[WorkspaceStateIndex, datetime]] = {}
        self._generation: dict[str, int] = {}
        self._epoch = 0

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.config.ttl_seconds)

    def known_skills(self) -> list[str]:
        ids = list(self.skills.ids) if self.skills is not None else []
        for skill_id in self.thresholds:
            if skill_id not in ids:
                ids.append(skill_id)
        return ids

    def threshold(self, skill_id: str) -> timedelta:
        """Skill definition override, then the threshold table, then the default."""
        if self.skills is not None and skill_id in self.skills:
            override = self.skills.get(skill_id).staleness_threshold
            if override is not None:
                return override
        if skill_id in self.thresholds:
            return self.thresholds[skill_id]
        return timedelta(hours=self.config.default_staleness_hours)

    async def get_state(self, workspace_id: str) -> WorkspaceStateIndex:
        """Cached snapshot, recomputed when missing or older than the TTL."""
        cached = self._cache.get(workspace_id)
        if cached is not None and cached[1] > self._clock():
            return cached[0]

        generation = (self._epoch, self._generation.get(workspace_id, 0))
        state = await self.compute(workspace_id)
        # An invalidation that raced with this computation wins.
        if (self._epoch, self._generation.get(workspace_id, 0)) == generation:
            self._cache[workspace_id] = (state, self._clock() + self.ttl)
        return state

    def invalidate(self, workspace_id: str) -> None:
        """Drop the cached snapshot so the next read recomputes from run history."""
        self._cache.pop(workspace_id, None)
        self._generation[workspace_id] = self._generation.get(workspace_id, 0) + 1
        logger.debug(f"State index invalidated for {workspace_id}", extra={"workspace_id": workspace_id})

    def invalidate_all(self) -> None:
        self._cache.clear()
        self._epoch += 1

    def template(self, template_id: str) -> TemplateRequirement | None:
        return self.templates.get(template_id)

    async def compute(self, workspace_id: str) -> WorkspaceStateIndex:
        """Build a fresh snapshot from the run store. Bypasses the cache."""
        runs = await self.store.latest_runs_per_skill(workspace_id)
        now = self._clock()

        skill_states = {skill_id: self._skill_state(skill_id, runs.get(skill_id), now) for skill_id in self.known_skills()}
        readiness = {
            template_id: template_readiness(template, skill_states, self.dimensions)
            for template_id, template in self.templates.items()
        }
        logger.debug(
            f"State index computed for {workspace_id}: "
            f"{sum(s.has_evidence for s in skill_states.values())}/{len(skill_states)} skills with evidence",
            extra={"workspace_id": workspace_id},
        )
        return WorkspaceStateIndex(
            workspace_id=workspace_id,
            computed_at=now,
            skill_states=skill_states,
            template_readiness=readiness,
        )

    def _skill_state(self, skill_id: str, run: RunRecord | None, now: datetime) -> SkillState:
        state = SkillState(skill_id=skill_id, skill_name=format_skill_name(skill_id))
        if run is None or run.completed_at is None:
            return state

        evidence = run.evidence or {}
        state.has_evidence = True
        state.last_run = run.completed_at
        state.is_stale = now - run.completed_at > self.threshold(skill_id)
        state.claim_count = len(evidence.get("claims") or [])
        state.record_count = len(evidence.get("evaluated_records") or [])
        state.run_duration_ms = run.duration_ms
        return state


__all__ = [
    "SkillState",
    "TemplateReadiness",
    "WorkspaceStateIndex",
    "WorkspaceStateService",
    "template_readiness",
]
