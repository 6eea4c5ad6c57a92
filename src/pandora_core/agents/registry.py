"""
Agent definition registry and lifecycle state machine.

    draft -> pending_review -> published <-> archived
    pending_review -> draft (rejected)

Archiving opens a recovery window; once it lapses the definition can only
be purged. Role and ownership checks belong to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from ..errors import (
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    LifecycleError,
    RecoveryWindowExpiredError,
)
from ..templating import PromptTemplate
from .types import SYNTHESIS_SLOTS, VALID_TRANSITIONS, AgentDefinition, AgentStatus

logger = logging.getLogger(__name__)

RECOVERY_WINDOW = timedelta(days=90)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_definition(definition: AgentDefinition) -> list[str]:
    """Problems that would otherwise surface mid-run; empty when usable."""
    errors: list[str] = []
    if not definition.skills:
        errors.append("declares no skills")

    seen: set[str] = set()
    for step in definition.skills:
        if step.output_key in seen:
            errors.append(f"output key '{step.output_key}' is used by more than one step")
        seen.add(step.output_key)

    if definition.synthesis.enabled:
        try:
            template = PromptTemplate(definition.synthesis.prompt_template, name=f"agent:{definition.id}/synthesis")
        except ConfigurationError as e:
            errors.append(e.message)
        else:
            unknown = sorted(template.variables - seen - SYNTHESIS_SLOTS)
            if unknown:
                errors.append(f"synthesis template reads unknown slots: {', '.join(unknown)}")
    return errors


def _check(definition: AgentDefinition) -> None:
    errors = validate_definition(definition)
    if errors:
        raise ConfigurationError(
            f"Agent '{definition.id}' is invalid: {'; '.join(errors)}",
            code=ErrorCode.INVALID_CONFIG,
            context=ErrorContext(agent_id=definition.id),
        )


class AgentRegistry:
    """
    In-process store of agent definitions.

    Every mutation replaces the stored object, so a run holding a reference
    to the previous definition is unaffected.

    Example:
        ```python
        agents = AgentRegistry()
        agents.register(weekly_briefing)
        agents.submit_for_review("weekly-briefing")
        agents.review("weekly-briefing", approve=True)
        ```
    """

    def __init__(
        self,
        agents: Iterable[AgentDefinition] = (),
        *,
        clock: Clock = _utcnow,
        recovery_window: timedelta = RECOVERY_WINDOW,
    ) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        self._clock = clock
        self.recovery_window = recovery_window
        for agent in agents:
            self.register(agent)

    def register(self, definition: AgentDefinition) -> AgentDefinition:
        """
        Store a new definition.

        Raises:
            ConfigurationError: Duplicate id, no skill steps, clashing output
                keys, or a synthesis template reading unknown slots
        """
        if definition.id in self._agents:
            raise ConfigurationError(
                f"Agent '{definition.id}' is already registered", context=ErrorContext(agent_id=definition.id)
            )
        _check(definition)
        now = self._clock()
        stored = replace(definition, created_at=now, updated_at=now)
        self._agents[definition.id] = stored
        logger.info(f"Registered agent: {definition.id} ({stored.status.value})")
        return stored

    def update(self, definition: AgentDefinition) -> AgentDefinition:
        """Replace the whole record, keeping lifecycle fields and bumping ``version``."""
        current = self.get(definition.id)
        if current.status is AgentStatus.ARCHIVED:
            raise LifecycleError(
                f"Agent '{definition.id}' is archived; recover it before editing",
                context=ErrorContext(agent_id=definition.id),
            )
        _check(definition)
        stored = replace(
            definition,
            status=current.status,
            version=current.version + 1,
            created_at=current.created_at,
            updated_at=self._clock(),
            recoverable_until=current.recoverable_until,
        )
        self._agents[definition.id] = stored
        logger.info(f"Updated agent: {definition.id} v{stored.version}")
        return stored

    def get(self, agent_id: str) -> AgentDefinition:
        """
        Raises:
            ConfigurationError: If the agent is unknown
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ConfigurationError(
                f"Unknown agent: {agent_id}", code=ErrorCode.UNKNOWN_AGENT, context=ErrorContext(agent_id=agent_id)
            )
        return agent

    def definitions(self, status: AgentStatus | None = None) -> list[AgentDefinition]:
        agents = list(self._agents.values())
        if status is not None:
            agents = [a for a in agents if a.status is status]
        return agents

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _transition(self, agent_id: str, target: AgentStatus, **changes) -> AgentDefinition:
        current = self.get(agent_id)
        if target not in VALID_TRANSITIONS[current.status]:
            raise LifecycleError(
                f"Agent '{agent_id}' cannot move from {current.status.value} to {target.value}",
                context=ErrorContext(agent_id=agent_id),
            )
        stored = replace(current, status=target, updated_at=self._clock(), **changes)
        self._agents[agent_id] = stored
        logger.info(f"Agent '{agent_id}': {current.status.value} -> {target.value}")
        return stored

    def submit_for_review(self, agent_id: str) -> AgentDefinition:
        return self._transition(agent_id, AgentStatus.PENDING_REVIEW)

    def review(self, agent_id: str, *, approve: bool) -> AgentDefinition:
        """Approve (publish) or reject (back to draft) a pending definition."""
        current = self.get(agent_id)
        if current.status is not AgentStatus.PENDING_REVIEW:
            raise LifecycleError(
                f"Agent '{agent_id}' is not pending review ({current.status.value})",
                context=ErrorContext(agent_id=agent_id),
            )
        return self._transition(agent_id, AgentStatus.PUBLISHED if approve else AgentStatus.DRAFT)

    def archive(self, agent_id: str) -> AgentDefinition:
        return self._transition(
            agent_id, AgentStatus.ARCHIVED, recoverable_until=self._clock() + self.recovery_window
        )

    def recover(self, agent_id: str) -> AgentDefinition:
        """
        Restore an archived definition to published.

        Raises:
            RecoveryWindowExpiredError: The recovery deadline has passed
        """
        current = self.get(agent_id)
        if (
            current.status is AgentStatus.ARCHIVED
            and current.recoverable_until is not None
            and self._clock() > current.recoverable_until
        ):
            raise RecoveryWindowExpiredError(
                f"Agent '{agent_id}' can no longer be recovered (window ended {current.recoverable_until.isoformat()})",
                recoverable_until=current.recoverable_until,
                context=ErrorContext(agent_id=agent_id),
            )
        return self._transition(agent_id, AgentStatus.PUBLISHED, recoverable_until=None)

    def purge_expired(self) -> list[str]:
        """Delete archived definitions whose recovery window has passed."""
        now = self._clock()
        expired = [
            agent.id
            for agent in self._agents.values()
            if agent.status is AgentStatus.ARCHIVED
            and agent.recoverable_until is not None
            and now > agent.recoverable_until
        ]
        for agent_id in expired:
            del self._agents[agent_id]
            logger.info(f"Purged archived agent: {agent_id}")
        return expired


__all__ = ["AgentRegistry", "RECOVERY_WINDOW", "validate_definition"]
