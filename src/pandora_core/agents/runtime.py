"""
Agent runtime: runs an agent's skills in order, synthesizes, delivers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from ..config import AgentConfig
from ..delivery.base import ChannelRegistry
from ..delivery.slack import format_blocks
from ..errors import (
    AgentExecutionError,
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    PandoraError,
    describe_error,
    surface_inner_timeouts,
)
from ..llm.base import ModelRouter
from ..llm.types import Message, ModelTier
from ..logging import RunLog, bind_log_context, generate_run_id, get_logger, timed
from ..skills.runtime import SkillRuntime
from ..skills.types import SkillRunResult, StepStatus
from ..storage.base import RunKind, RunRecord, RunStatus, RunStore
from ..templating import TemplateRenderer
from .registry import AgentRegistry
from .types import (
    AgentDefinition,
    AgentRunResult,
    AgentSkillStep,
    AgentStatus,
    AgentStepResult,
    DeliveryOutcome,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [truncated]"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def skill_output_text(run: SkillRunResult) -> str:
    """Text an agent feeds forward from a skill run: its narrative, else its step outputs."""
    if run.narrative:
        return run.narrative
    return json.dumps(run.to_output()["step_outputs"], indent=2, default=str)


class AgentRuntime:
    """
    Executes agents.

    Steps run strictly in declared order. A failed required step aborts the
    run with ``AgentExecutionError``; a failed optional step is recorded and
    the run ends ``partial``.

    Example:
        ```python
        runtime = AgentRuntime(agents=agents, skills=skill_runtime, models=models, store=store)
        result = await runtime.execute_agent("weekly-briefing", "ws_1", dry_run=True)
        ```
    """

    def __init__(
        self,
        *,
        agents: AgentRegistry,
        skills: SkillRuntime,
        models: ModelRouter,
        store: RunStore,
        channels: ChannelRegistry | None = None,
        config: AgentConfig | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self.agents = agents
        self.skills = skills
        self.models = models
        self.store = store
        self.channels = channels or ChannelRegistry()
        self.config = config or AgentConfig()
        self.renderer = renderer or TemplateRenderer()
        self._log = get_logger()

    def resolve(self, agent_id: str, workspace_id: str) -> AgentDefinition:
        """
        Look up a runnable definition.

        Raises:
            ConfigurationError: Unknown, disabled, unpublished, or out of scope
        """
        agent = self.agents.get(agent_id)
        context = ErrorContext(agent_id=agent_id, workspace_id=workspace_id)
        if not agent.enabled:
            raise ConfigurationError(f"Agent '{agent_id}' is disabled", code=ErrorCode.UNKNOWN_AGENT, context=context)
        if agent.status is not AgentStatus.PUBLISHED:
            raise ConfigurationError(
                f"Agent '{agent_id}' is not published ({agent.status.value})",
                code=ErrorCode.UNKNOWN_AGENT,
                context=context,
            )
        if not agent.applies_to(workspace_id):
            raise ConfigurationError(
                f"Agent '{agent_id}' does not apply to workspace {workspace_id}",
                code=ErrorCode.UNKNOWN_AGENT,
                context=context,
            )
        return agent

    async def execute_agent(self, agent_id: str, workspace_id: str, dry_run: bool = False) -> AgentRunResult:
        """
        Run an agent once.

        Args:
            agent_id: Registered agent id
            workspace_id: Workspace to run against
            dry_run: Skip delivery

        Returns:
            The finalized run result (``completed`` or ``partial``)

        Raises:
            ConfigurationError: The agent cannot run for this workspace
            AgentExecutionError: A required step failed; ``.result`` holds the partial run
        """
        agent = self.resolve(agent_id, workspace_id)

        result = AgentRunResult(
            run_id=generate_run_id(),
            agent_id=agent.id,
            workspace_id=workspace_id,
            agent_version=agent.version,
            started_at=datetime.now(timezone.utc),
            dry_run=dry_run,
        )
        extra = {"run_id": result.run_id, "workspace_id": workspace_id, "agent_id": agent.id}
        logger.info(f"Agent run started: {agent.id} v{agent.version} ({len(agent.skills)} skills)", extra=extra)
        self._log.log_run(RunLog(result.run_id, workspace_id, "agent", agent.id, RunStatus.RUNNING.value))
        await self._persist(result, insert=True)

        with timed() as timer:
            try:
                for step in agent.skills:
                    with bind_log_context(**extra):
                        step_result = await self._run_step(agent, step, workspace_id, result)
                    result.skill_results.append(step_result)
                    if step_result.status is StepStatus.COMPLETED:
                        continue
                    if step.required:
                        message = f"Required skill {step.skill_id} failed: {step_result.error}"
                        logger.error(f"Agent {agent.id}: {message}", extra=extra)
                        result.status = RunStatus.FAILED
                        result.error = message
                        await self._finalize(result, timer.elapsed_ms)
                        raise AgentExecutionError(
                            message,
                            step_id=step.skill_id,
                            result=result,
                            context=ErrorContext(run_id=result.run_id, workspace_id=workspace_id, agent_id=agent.id),
                        )
                    logger.warning(
                        f"Agent {agent.id}: optional skill {step.skill_id} failed, continuing: {step_result.error}",
                        extra=extra,
                    )

                if agent.synthesis.enabled and result.skill_outputs:
                    await self._synthesize(agent, result)

                if dry_run or not result.synthesized_output:
                    result.delivery = DeliveryOutcome(status="skipped", channel=agent.delivery.channel)
                else:
                    result.delivery = await self._deliver(agent, result)

                failed = any(r.status is not StepStatus.COMPLETED for r in result.skill_results)
                result.status = RunStatus.PARTIAL if failed or result.error else RunStatus.COMPLETED
            except asyncio.CancelledError:
                result.status = RunStatus.FAILED
                result.error = "Run cancelled before completion"
                await self._finalize(result, timer.elapsed_ms)
                raise

        await self._finalize(result, timer.elapsed_ms)
        logger.info(
            f"Agent run {result.status.value}: {agent.id} ({result.duration_ms}ms, {result.token_usage['total']} tokens)",
            extra=extra,
        )
        return result

    # =========================================================================
    # Steps
    # =========================================================================

    async def _run_step(
        self,
        agent: AgentDefinition,
        step: AgentSkillStep,
        workspace_id: str,
        result: AgentRunResult,
    ) -> AgentStepResult:
        step_result = AgentStepResult(skill_id=step.skill_id, output_key=step.output_key, required=step.required)
        timeout = step.timeout_seconds or self.config.default_step_timeout
        extra = {"run_id": result.run_id, "agent_id": agent.id, "skill_id": step.skill_id}

        with timed() as timer:
            try:
                # wait_for cancels the skill run on timeout; its late result never lands here.
                run = await asyncio.wait_for(
                    surface_inner_timeouts(
                        self.skills.execute_skill(step.skill_id, workspace_id, dict(step.params)),
                        step_id=step.skill_id,
                    ),
                    timeout=timeout,
                )
                error: str | None = None
            except asyncio.TimeoutError:
                run = None
                error = f"Skill '{step.skill_id}' timed out after {timeout:g}s"
            except PandoraError as e:
                run = None
                error = describe_error(e)
            except Exception as e:
                run = None
                error = f"{type(e).__name__}: {e}"
                logger.exception(f"Skill {step.skill_id} raised inside agent {agent.id}", extra=extra)

        step_result.duration_ms = int(timer.elapsed_ms)
        if run is not None:
            step_result.run_id = run.run_id
            step_result.total_tokens = run.total_tokens
            if run.status is RunStatus.FAILED:
                error = "; ".join(run.errors) or "Skill execution failed"

        if error is not None:
            step_result.status = StepStatus.FAILED
            step_result.error = error
            return step_result

        step_result.status = StepStatus.COMPLETED
        result.skill_outputs[step.output_key] = run
        logger.info(f"Agent {agent.id}: skill {step.skill_id} completed in {step_result.duration_ms}ms", extra=extra)
        return step_result

    # =========================================================================
    # Synthesis
    # =========================================================================

    def build_synthesis_slots(self, agent: AgentDefinition, result: AgentRunResult) -> dict[str, Any]:
        """
        Template slots for the synthesis prompt.

        Each completed step's output is available under its ``output_key``;
        ``skill_outputs`` holds every completed output, one section per skill.
        Steps that did not complete get a placeholder so templates still render.
        """
        slots: dict[str, Any] = {}
        sections: list[str] = []
        for step in agent.skills:
            run = result.skill_outputs.get(step.output_key)
            if run is None:
                slots[step.output_key] = f"[unavailable: {step.skill_id} did not complete]"
                continue
            text = skill_output_text(run)
            slots[step.output_key] = truncate(text, self.config.synthesis_slot_chars)
            sections.append(f"## {step.skill_id}\n{truncate(text, self.config.source_chars)}")
        slots["skill_outputs"] = "\n\n---\n\n".join(sections)
        slots["agent_name"] = agent.name
        slots["workspace_id"] = result.workspace_id
        return slots

    async def _synthesize(self, agent: AgentDefinition, result: AgentRunResult) -> None:
        """One high-tier call over the gathered outputs. Failure downgrades the run to partial."""
        extra = {"run_id": result.run_id, "agent_id": agent.id}
        try:
            prompt = self.renderer.render(
                agent.synthesis.prompt_template,
                self.build_synthesis_slots(agent, result),
                name=f"agent:{agent.id}/synthesis",
            ).text
            client = self.models.for_tier(ModelTier.SYNTHESIZE)
            response = await client.complete(
                agent.synthesis.system_prompt,
                [Message.user(prompt)],
                max_tokens=agent.synthesis.max_tokens or self.config.synthesis_max_tokens,
                temperature=self.models.temperature(ModelTier.SYNTHESIZE),
            )
        except Exception as e:
            result.error = f"Synthesis failed: {describe_error(e)}"
            logger.error(f"Agent {agent.id}: {result.error}", extra=extra)
            return

        result.synthesis_tokens += response.usage.total_tokens
        if not response.ok:
            result.error = f"Synthesis failed ({response.status}): {response.error}"
            logger.error(f"Agent {agent.id}: {result.error}", extra=extra)
            return
        result.synthesized_output = response.content or None

    # =========================================================================
    # Delivery / persistence
    # =========================================================================

    async def _deliver(self, agent: AgentDefinition, result: AgentRunResult) -> DeliveryOutcome:
        """Post the narrative. Failures are recorded, never raised."""
        target = agent.delivery
        outcome = DeliveryOutcome(channel=target.channel)
        try:
            channel = self.channels.get(target.channel)
            if target.format == "blocks":
                await channel.post_blocks(
                    format_blocks(result.synthesized_output or "", title=agent.name), target=target.target
                )
                outcome.messages = 1
            else:
                outcome.messages = await channel.deliver(
                    result.synthesized_output or "", title=agent.name, target=target.target
                )
            outcome.status = "delivered"
            logger.info(
                f"Agent {agent.id}: delivered {outcome.messages} message(s) via {target.channel}",
                extra={"run_id": result.run_id, "agent_id": agent.id},
            )
        except Exception as e:
            outcome.status = "failed"
            outcome.error = describe_error(e)
            logger.error(
                f"Agent {agent.id}: delivery via {target.channel} failed: {outcome.error}",
                extra={"run_id": result.run_id, "agent_id": agent.id},
            )
        return outcome

    async def _finalize(self, result: AgentRunResult, elapsed_ms: float) -> None:
        result.completed_at = datetime.now(timezone.utc)
        result.duration_ms = int(elapsed_ms)
        await self._persist(result)
        self._log.log_run(
            RunLog(
                result.run_id,
                result.workspace_id,
                "agent",
                result.agent_id,
                result.status.value,
                duration_ms=elapsed_ms,
                total_tokens=result.token_usage["total"],
                error=result.error,
            )
        )

    def _to_record(self, result: AgentRunResult) -> RunRecord:
        terminal = result.status.is_terminal
        return RunRecord(
            run_id=result.run_id,
            workspace_id=result.workspace_id,
            kind=RunKind.AGENT,
            target_id=result.agent_id,
            status=result.status,
            started_at=result.started_at,
            completed_at=result.completed_at if terminal else None,
            duration_ms=result.duration_ms if terminal else None,
            params={"dry_run": result.dry_run, "agent_version": result.agent_version},
            output=result.to_output() if terminal else None,
            token_usage=result.token_usage,
            error=result.error,
        )

    async def _persist(self, result: AgentRunResult, *, insert: bool = False) -> None:
        """Write the run record. Failures are logged, never raised."""
        try:
            record = self._to_record(result)
            if insert:
                await self.store.insert_run(record)
            else:
                await self.store.update_run(record)
        except Exception as e:
            logger.error(
                f"Failed to persist agent run {result.run_id}: {e}",
                extra={"run_id": result.run_id, "agent_id": result.agent_id},
            )


__all__ = ["AgentRuntime", "skill_output_text", "truncate"]
