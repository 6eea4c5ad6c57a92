"""
Skill runtime: executes a skill's step graph for one workspace.

Steps run level by level in topological order; steps in the same level run
concurrently under a semaphore. A step failure is recorded on that step
only. Steps whose dependencies did not all complete are skipped.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..config import RuntimeConfig
from ..errors import (
    ErrorCode,
    ErrorContext,
    SchemaValidationError,
    StepExecutionError,
    StepTimeoutError,
    describe_error,
    surface_inner_timeouts,
)
from ..llm.base import RETRYABLE_STATUSES, ModelRouter
from ..llm.types import CompletionResult, Message, ModelTier, Usage
from ..logging import RunLog, StepLog, bind_log_context, generate_run_id, get_logger, timed
from ..storage.base import RunKind, RunRecord, RunStatus, RunStore
from ..templating import TemplateRenderer, estimate_tokens
from ..tools.base import ToolRegistry
from ..validation import parse_json_response, repair_array_wrapping, validate_against_schema
from .evidence import EvidenceRegistry
from .graph import StepGraph
from .registry import SkillRegistry
from .types import (
    ClassifyStep,
    ComputeStep,
    SkillDefinition,
    SkillEvidence,
    SkillRunResult,
    StepDefinition,
    StepResult,
    StepStatus,
    StepTier,
    SynthesizeStep,
)

logger = logging.getLogger(__name__)

ContextProvider = Callable[[str], Awaitable[dict[str, Any]]]
CompletionHook = Callable[[SkillRunResult], Awaitable[None]]

FINAL_ANSWER_PROMPT = (
    "You have used all available tool calls. Provide your final analysis now "
    "based on the data gathered so far. Do not request any more tools."
)

_TIER_MODELS = {StepTier.CLASSIFY: ModelTier.CLASSIFY, StepTier.SYNTHESIZE: ModelTier.SYNTHESIZE}


@dataclass
class _RunState:
    """Mutable bookkeeping for one in-flight run."""

    skill: SkillDefinition
    graph: StepGraph
    result: SkillRunResult
    business_context: dict[str, Any]
    params: dict[str, Any]
    outputs: dict[str, Any] = field(default_factory=dict)


def default_system_prompt(step: StepDefinition, business_context: dict[str, Any]) -> str:
    """System prompt used when a model step does not declare its own."""
    business_model = business_context.get("business_model") or {}
    goals = business_context.get("goals_and_targets") or {}
    lines = ["You are analyzing go-to-market data for a workspace."]
    if business_model or goals:
        lines.append("")
        lines.append("Business context:")
        if "gtm_motion" in business_model:
            lines.append(f"- GTM motion: {business_model['gtm_motion']}")
        if "sales_cycle_days" in business_model:
            lines.append(f"- Sales cycle: {business_model['sales_cycle_days']} days")
        if "revenue_target" in goals:
            lines.append(f"- Revenue target: {goals['revenue_target']}")
    lines.append("")
    lines.append(f"Your task: {step.name}")
    lines.append("Be specific with names and numbers, and use the actual data provided.")
    return "\n".join(lines)


class SkillRuntime:
    """
    Executes skills.

    Example:
        ```python
        runtime = SkillRuntime(tools=tools, skills=skills, models=models, store=store)
        result = await runtime.execute_skill("pipeline-hygiene", "ws_1", {"window_days": 30})
        result.status       # RunStatus.COMPLETED / PARTIAL / FAILED
        result.narrative
        ```
    """

    def __init__(
        self,
        *,
        tools: ToolRegistry,
        skills: SkillRegistry,
        models: ModelRouter,
        store: RunStore,
        evidence: EvidenceRegistry | None = None,
        config: RuntimeConfig | None = None,
        context_provider: ContextProvider | None = None,
        on_complete: CompletionHook | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self.tools = tools
        self.skills = skills
        self.models = models
        self.store = store
        self.evidence = evidence or EvidenceRegistry()
        self.config = config or RuntimeConfig()
        self.context_provider = context_provider
        self.on_complete = on_complete
        self.renderer = renderer or skills.renderer
        self._log = get_logger()

    # =========================================================================
    # Public entry point
    # =========================================================================

    async def execute_skill(
        self,
        definition: SkillDefinition | str,
        workspace_id: str,
        params: dict[str, Any] | None = None,
    ) -> SkillRunResult:
        """
        Run a skill once.

        Args:
            definition: Skill definition or registered skill id
            workspace_id: Workspace the run belongs to
            params: Run parameters, visible to tools and templates as ``params``

        Returns:
            The finalized run result. Step failures never raise.

        Raises:
            ConfigurationError: Unknown skill id or malformed definition
        """
        skill = self.skills.get(definition) if isinstance(definition, str) else definition
        graph = self.skills.graph_for(skill)
        params = dict(params or {})

        result = SkillRunResult(
            run_id=generate_run_id(),
            workspace_id=workspace_id,
            skill_id=skill.id,
            started_at=datetime.now(timezone.utc),
            params=params,
        )
        for step in skill.steps:
            result.step_results[step.id] = StepResult(step_id=step.id, tier=step.tier, output_key=step.output_key)

        extra = {"run_id": result.run_id, "workspace_id": workspace_id, "skill_id": skill.id}
        logger.info(f"Skill run started: {skill.id}", extra=extra)
        self._log.log_run(RunLog(result.run_id, workspace_id, "skill", skill.id, RunStatus.RUNNING.value))
        await self._persist(result, insert=True)

        with timed() as timer:
            try:
                business_context = await self._load_context(skill, workspace_id)
                state = _RunState(skill, graph, result, business_context, params)
                with bind_log_context(**extra):
                    await self._run_graph(state)
                result.step_outputs = dict(state.outputs)
                result.status = self._overall_status(state)
                result.evidence = await self._build_evidence(state)
                result.narrative = self._narrative(state)
            except asyncio.CancelledError:
                result.status = RunStatus.FAILED
                result.errors.append("Run cancelled before completion")
                for step_result in result.step_results.values():
                    if step_result.status is StepStatus.RUNNING:
                        step_result.status = StepStatus.FAILED
                        step_result.error = "Cancelled while running"
                    elif step_result.status is StepStatus.PENDING:
                        step_result.status = StepStatus.SKIPPED
                        step_result.error = "Skipped: run cancelled"
                result.completed_at = datetime.now(timezone.utc)
                result.duration_ms = int(timer.elapsed_ms)
                await self._persist(result)
                raise

        result.completed_at = datetime.now(timezone.utc)
        result.duration_ms = int(timer.elapsed_ms)
        await self._persist(result)

        self._log.log_run(
            RunLog(
                result.run_id,
                workspace_id,
                "skill",
                skill.id,
                result.status.value,
                duration_ms=timer.elapsed_ms,
                total_tokens=result.total_tokens,
                error="; ".join(result.errors) or None,
            )
        )
        logger.info(f"Skill run {result.status.value}: {skill.id} ({result.duration_ms}ms)", extra=extra)

        if self.on_complete is not None:
            try:
                await self.on_complete(result)
            except Exception as e:
                logger.warning(f"Completion hook failed for run {result.run_id}: {e}", extra=extra)

        return result

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _run_graph(self, state: _RunState) -> None:
        semaphore = asyncio.Semaphore(self.config.max_parallel_steps)
        steps = {s.id: s for s in state.skill.steps}

        for level in state.graph.levels():
            runnable: list[StepDefinition] = []
            for step_id in level:
                step = steps[step_id]
                unmet = [
                    dep
                    for dep in step.depends_on
                    if state.result.step_results[dep].status is not StepStatus.COMPLETED
                ]
                if unmet:
                    step_result = state.result.step_results[step_id]
                    step_result.status = StepStatus.SKIPPED
                    step_result.error = f"Skipped: dependencies did not complete ({', '.join(unmet)})"
                    self._log.log_step(StepLog(state.result.run_id, step_id, step.tier.value, "skipped"))
                else:
                    runnable.append(step)

            outcomes = await asyncio.gather(*(self._run_step(state, step, semaphore) for step in runnable))

            # Outputs become visible only once the whole level has settled.
            for step, (ok, value) in zip(runnable, outcomes):
                if ok:
                    state.outputs[step.output_key] = value

    async def _run_step(
        self,
        state: _RunState,
        step: StepDefinition,
        semaphore: asyncio.Semaphore,
    ) -> tuple[bool, Any]:
        """Execute one step. Never raises except on cancellation."""
        step_result = state.result.step_results[step.id]
        extra = {"run_id": state.result.run_id, "skill_id": state.skill.id, "step_id": step.id}

        async with semaphore:
            step_result.status = StepStatus.RUNNING
            with timed() as timer:
                try:
                    coro = surface_inner_timeouts(self._execute_step(state, step, step_result), step_id=step.id)
                    if step.timeout_seconds:
                        value = await asyncio.wait_for(coro, timeout=step.timeout_seconds)
                    else:
                        value = await coro
                    error: BaseException | None = None
                except asyncio.TimeoutError:
                    error = StepTimeoutError(
                        f"Step '{step.id}' timed out after {step.timeout_seconds:g}s",
                        step_id=step.id,
                        timeout_seconds=step.timeout_seconds,
                    )
                except Exception as e:
                    error = e
            step_result.duration_ms = int(timer.elapsed_ms)

        tier_usage = state.result.token_usage.get(step.tier)
        if tier_usage is not None:
            tier_usage.add(step_result.usage)
        state.result.tool_call_count += step_result.tool_calls

        if error is None:
            step_result.status = StepStatus.COMPLETED
            self._log.log_step(
                StepLog(state.result.run_id, step.id, step.tier.value, "completed", duration_ms=timer.elapsed_ms)
            )
            return True, value

        message = describe_error(error)
        step_result.status = StepStatus.FAILED
        step_result.error = message
        state.result.errors.append(f"{step.id}: {message}")
        logger.warning(f"Step '{step.id}' failed: {message}", extra=extra)
        self._log.log_step(
            StepLog(state.result.run_id, step.id, step.tier.value, "failed", duration_ms=timer.elapsed_ms, error=message)
        )
        return False, None

    def _overall_status(self, state: _RunState) -> RunStatus:
        statuses = {step_id: r.status for step_id, r in state.result.step_results.items()}
        if all(s is StepStatus.COMPLETED for s in statuses.values()):
            return RunStatus.COMPLETED
        if not any(s is StepStatus.COMPLETED for s in statuses.values()):
            return RunStatus.FAILED

        critical = state.skill.critical_steps
        if critical is None:
            critical = (state.graph.terminal,) if state.graph.terminal else ()
        required: set[str] = set()
        for step_id in critical:
            required.add(step_id)
            required |= state.graph.ancestors(step_id)
        if any(statuses[step_id] is not StepStatus.COMPLETED for step_id in required):
            return RunStatus.FAILED
        return RunStatus.PARTIAL

    # =========================================================================
    # Tier execution
    # =========================================================================

    async def _execute_step(self, state: _RunState, step: StepDefinition, step_result: StepResult) -> Any:
        payload = step.payload
        if isinstance(payload, ComputeStep):
            return await self._execute_compute(state, step, payload)
        if isinstance(payload, ClassifyStep):
            return await self._execute_classify(state, step, payload, step_result)
        if isinstance(payload, SynthesizeStep):
            return await self._execute_synthesize(state, step, payload, step_result)
        raise StepExecutionError(f"Unsupported step payload: {type(payload).__name__}", step_id=step.id)

    def _visible_outputs(self, state: _RunState, step: StepDefinition) -> dict[str, Any]:
        """Outputs of the steps ``step`` transitively depends on."""
        ancestors = state.graph.ancestors(step.id)
        keys = {state.skill.step(step_id).output_key for step_id in ancestors}
        return {key: value for key, value in state.outputs.items() if key in keys}

    def _runtime_kwargs(self, state: _RunState, step: StepDefinition) -> dict[str, Any]:
        return {
            "step_outputs": self._visible_outputs(state, step),
            "context": state.business_context,
            "params": state.params,
        }

    async def _execute_compute(self, state: _RunState, step: StepDefinition, payload: ComputeStep) -> Any:
        tool = self.tools.lookup(payload.tool_id)
        return await tool.invoke(**{**payload.args, **self._runtime_kwargs(state, step)})

    def _render_prompt(self, state: _RunState, step: StepDefinition, prompt: str) -> str:
        slots: dict[str, Any] = {
            **state.business_context,
            **state.params,
            **self._visible_outputs(state, step),
            "context": state.business_context,
            "params": state.params,
            "workspace_id": state.result.workspace_id,
        }
        rendered = self.renderer.render(prompt, slots, name=f"{state.skill.id}/{step.id}").text
        self._check_prompt_size(step, rendered)
        return rendered

    def _check_prompt_size(self, step: StepDefinition, rendered: str) -> None:
        estimated = estimate_tokens(rendered)
        if estimated > self.config.max_prompt_tokens:
            raise StepExecutionError(
                f"{step.tier.value} step '{step.id}' input exceeds {self.config.max_prompt_tokens} token limit "
                f"({estimated} estimated). Add compute steps to reduce data volume.",
                step_id=step.id,
                code=ErrorCode.PROMPT_TOO_LARGE,
            )
        if estimated > self.config.warn_prompt_tokens:
            logger.warning(
                f"{step.tier.value} step '{step.id}' input is {estimated} estimated tokens "
                f"(target <{self.config.warn_prompt_tokens})",
                extra={"step_id": step.id},
            )

    async def _complete(
        self,
        state: _RunState,
        step: StepDefinition,
        step_result: StepResult,
        system_prompt: str,
        messages: list[Message],
        *,
        max_tokens: int,
        **kwargs: Any,
    ) -> CompletionResult:
        tier = _TIER_MODELS[step.tier]
        client = self.models.for_tier(tier)
        response = await client.complete(
            system_prompt,
            messages,
            max_tokens=max_tokens,
            temperature=self.models.temperature(tier),
            **kwargs,
        )
        step_result.usage.add(response.usage)
        if not response.ok:
            raise StepExecutionError(
                f"Model call failed ({response.status}): {response.error}",
                step_id=step.id,
                code=ErrorCode.MODEL_ERROR,
                retryable=response.status in RETRYABLE_STATUSES,
                context=ErrorContext(run_id=state.result.run_id, skill_id=state.skill.id, step_id=step.id),
            )
        return response

    async def _execute_classify(
        self,
        state: _RunState,
        step: StepDefinition,
        payload: ClassifyStep,
        step_result: StepResult,
    ) -> Any:
        prompt = self._render_prompt(state, step, payload.prompt)
        system_prompt = payload.system_prompt or default_system_prompt(step, state.business_context)
        system_prompt += "\n\nRespond with JSON only, matching this schema:\n" + json.dumps(payload.schema)

        response = await self._complete(
            state,
            step,
            step_result,
            system_prompt,
            [Message.user(prompt)],
            max_tokens=payload.max_tokens,
            response_format={"type": "json_object"},
        )

        try:
            parsed = parse_json_response(response.content or "")
        except ValueError as e:
            raise SchemaValidationError(str(e), step_id=step.id, cause=e) from e

        parsed = repair_array_wrapping(parsed, payload.schema)
        validation = validate_against_schema(parsed, payload.schema)
        if not validation.valid:
            raise SchemaValidationError(
                f"Response failed schema validation: {'; '.join(validation.errors)}",
                step_id=step.id,
                errors=validation.errors,
            )
        return parsed

    async def _execute_synthesize(
        self,
        state: _RunState,
        step: StepDefinition,
        payload: SynthesizeStep,
        step_result: StepResult,
    ) -> str:
        prompt = self._render_prompt(state, step, payload.prompt)
        system_prompt = payload.system_prompt or default_system_prompt(step, state.business_context)
        messages = [Message.user(prompt)]

        tools = [self.tools.lookup(name) for name in payload.tools]
        if not tools:
            response = await self._complete(
                state, step, step_result, system_prompt, messages, max_tokens=payload.max_tokens
            )
            return response.content or ""

        budget = payload.max_tool_calls
        if budget is None:
            budget = self.config.default_max_tool_calls
        allowed = set(payload.tools)
        runtime = self._runtime_kwargs(state, step)

        while step_result.tool_calls < budget:
            response = await self._complete(
                state, step, step_result, system_prompt, messages, max_tokens=payload.max_tokens, tools=tools
            )
            if not response.has_tool_calls:
                return response.content or ""

            messages.append(response.to_message())
            for call in response.tool_calls or []:
                step_result.tool_calls += 1
                if call.name in allowed:
                    tool_result = await self.tools.execute(call.name, call.arguments, runtime)
                    content = tool_result.to_string()
                else:
                    content = f"Error: tool '{call.name}' is not available to this step"
                logger.debug(f"Tool call {call.name} in step '{step.id}'", extra={"step_id": step.id})
                messages.append(Message.tool_result(call.id, content, name=call.name))

        logger.warning(f"Step '{step.id}' reached its tool-call budget ({budget}); requesting final answer")
        messages.append(Message.user(FINAL_ANSWER_PROMPT))
        response = await self._complete(
            state, step, step_result, system_prompt, messages, max_tokens=payload.max_tokens
        )
        return response.content or ""

    # =========================================================================
    # Finalization
    # =========================================================================

    async def _load_context(self, skill: SkillDefinition, workspace_id: str) -> dict[str, Any]:
        if self.context_provider is None:
            return {}
        try:
            business_context = dict(await self.context_provider(workspace_id) or {})
        except Exception as e:
            logger.warning(f"Business context unavailable for {workspace_id}: {e}", extra={"skill_id": skill.id})
            return {}
        missing = [key for key in skill.required_context if key not in business_context]
        if missing:
            logger.warning(
                f"Skill '{skill.id}' is missing required context: {', '.join(missing)}",
                extra={"skill_id": skill.id, "workspace_id": workspace_id},
            )
        return business_context

    async def _build_evidence(self, state: _RunState) -> SkillEvidence:
        builder = self.evidence.get(state.skill.id)
        context = {
            "workspace_id": state.result.workspace_id,
            "business_context": state.business_context,
            "params": state.params,
        }
        try:
            evidence = builder(state.skill, dict(state.outputs), context)
            if inspect.isawaitable(evidence):
                evidence = await evidence
            return evidence
        except Exception as e:
            logger.error(
                f"Evidence builder failed for skill '{state.skill.id}': {e}",
                extra={"run_id": state.result.run_id, "skill_id": state.skill.id},
            )
            state.result.errors.append(f"evidence: {e}")
            return SkillEvidence()

    def _narrative(self, state: _RunState) -> str | None:
        for step in reversed(state.skill.steps):
            if step.tier is not StepTier.SYNTHESIZE:
                continue
            if state.result.step_results[step.id].status is StepStatus.COMPLETED:
                value = state.outputs.get(step.output_key)
                if value is None:
                    return None
                return value if isinstance(value, str) else json.dumps(value, default=str)
        return None

    def _to_record(self, result: SkillRunResult) -> RunRecord:
        return RunRecord(
            run_id=result.run_id,
            workspace_id=result.workspace_id,
            kind=RunKind.SKILL,
            target_id=result.skill_id,
            status=result.status,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms if result.status.is_terminal else None,
            params=result.params,
            output=result.to_output() if result.status.is_terminal else None,
            token_usage=result.token_summary(),
            error="; ".join(result.errors) or None,
        )

    async def _persist(self, result: SkillRunResult, *, insert: bool = False) -> None:
        """Write the run record. Failures are logged, never raised."""
        try:
            record = self._to_record(result)
            if insert:
                await self.store.insert_run(record)
            else:
                await self.store.update_run(record)
        except Exception as e:
            logger.error(
                f"Failed to persist skill run {result.run_id}: {e}",
                extra={"run_id": result.run_id, "skill_id": result.skill_id},
            )


__all__ = ["SkillRuntime", "default_system_prompt", "FINAL_ANSWER_PROMPT"]
