"""
Router dispatcher: executes a classified request.

Branches on ``RouterDecision.type``:

- ``evidence_inquiry``: read the latest completed run of a skill
- ``scoped_analysis``: one synthesis call over several skills' evidence
- ``deliverable_request``: check template readiness, then run the pipeline
- ``skill_execution``: start a skill run in the background
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import ConfigurationError, describe_error, surface_inner_timeouts
from ..llm.base import ModelRouter
from ..llm.types import Message, ModelTier
from ..logging import timed
from ..skills.runtime import SkillRuntime
from ..skills.types import SkillRunResult
from ..state.index import WorkspaceStateService
from ..state.templates import format_skill_name
from ..storage.base import RunStatus, RunStore
from .evidence import extract_metric, filter_evidence_by_entity
from .types import DeliverablePipeline, ExecutionResult, RequestType, RouterDecision

logger = logging.getLogger(__name__)

SCOPED_ANALYSIS_SYSTEM_PROMPT = (
    "You are a GTM intelligence analyst. Answer the question using only the evidence provided. "
    "Be specific, reference actual data points, and be concise. If the evidence is insufficient, say so."
)

MAX_PROMPT_CLAIMS = 10
MAX_PROMPT_RECORDS = 5


def build_scoped_analysis_prompt(
    question: str,
    scope_type: str,
    scope_entity: str | None,
    bundle: dict[str, dict[str, Any]],
) -> str:
    """Embed each skill's evidence (top claims and records) under the question."""
    lines = [f"Question: {question}"]
    lines.append(f"Scope: {scope_type}" + (f" ({scope_entity})" if scope_entity else ""))
    lines.append("")
    lines.append("Evidence from skills:")
    lines.append("")
    if not bundle:
        lines.append("No skill has produced evidence for this workspace yet.")
        lines.append("")

    for skill_id, evidence in bundle.items():
        lines.append(f"--- {format_skill_name(skill_id)} ---")
        claims = evidence.get("claims") or []
        if claims:
            lines.append(f"Findings ({len(claims)}):")
            for claim in claims[:MAX_PROMPT_CLAIMS]:
                text = claim.get("claim_text") or claim.get("message") or ""
                lines.append(f"- [{claim.get('severity', 'info')}] {text}")
        records = evidence.get("evaluated_records") or []
        if records:
            lines.append(f"Records matching scope ({len(records)}):")
            for record in records[:MAX_PROMPT_RECORDS]:
                fields = record.get("fields") or {k: v for k, v in record.items() if not isinstance(v, (dict, list))}
                summary = ", ".join(f"{k}: {v}" for k, v in list(fields.items())[:5])
                lines.append(f"- {record.get('entity_name') or 'Unknown'}: {summary}")
        lines.append("")

    return "\n".join(lines)


class Dispatcher:
    """
    Maps a ``RouterDecision`` onto an execution strategy.

    Example:
        ```python
        dispatcher = Dispatcher(store=store, states=states, skills=skill_runtime, models=models)
        result = await dispatcher.dispatch(RouterDecision(type="evidence_inquiry", target_skill="pipeline-hygiene"), "ws_1")
        ```
    """

    def __init__(
        self,
        *,
        store: RunStore,
        states: WorkspaceStateService,
        skills: SkillRuntime,
        models: ModelRouter,
        pipeline: DeliverablePipeline | None = None,
        refresh_stale: bool = True,
        refresh_timeout_seconds: float = 120.0,
        scoped_max_tokens: int = 1000,
        scoped_temperature: float = 0.1,
    ) -> None:
        self.store = store
        self.states = states
        self.skills = skills
        self.models = models
        self.pipeline = pipeline
        self.refresh_stale = refresh_stale
        self.refresh_timeout_seconds = refresh_timeout_seconds
        self.scoped_max_tokens = scoped_max_tokens
        self.scoped_temperature = scoped_temperature
        self._tasks: set[asyncio.Task[SkillRunResult]] = set()

        self._handlers: dict[str, Callable[[RouterDecision, str], Awaitable[ExecutionResult]]] = {
            RequestType.EVIDENCE_INQUIRY.value: self._evidence_inquiry,
            RequestType.SCOPED_ANALYSIS.value: self._scoped_analysis,
            RequestType.DELIVERABLE_REQUEST.value: self._deliverable_request,
            RequestType.SKILL_EXECUTION.value: self._skill_execution,
        }

    async def dispatch(self, decision: RouterDecision, workspace_id: str) -> ExecutionResult:
        """
        Execute ``decision`` for a workspace.

        Never raises for request-level problems; they come back as
        ``ExecutionResult(success=False, error=...)``.
        """
        request_type = decision.type.value if isinstance(decision.type, RequestType) else str(decision.type)
        extra = {"workspace_id": workspace_id, "event_type": request_type}

        with timed() as timer:
            try:
                if decision.stale_skills_to_rerun and self.refresh_stale:
                    await self.refresh(decision.stale_skills_to_rerun, workspace_id)

                handler = self._handlers.get(request_type)
                if handler is None:
                    result = ExecutionResult.failure(request_type, f"Unknown request type: {request_type}")
                else:
                    result = await handler(decision, workspace_id)
            except Exception as e:
                logger.exception(f"Dispatch of {request_type} failed", extra=extra)
                result = ExecutionResult.failure(request_type, describe_error(e))

        if result.duration_ms is None:
            result.duration_ms = int(timer.elapsed_ms)
        logger.info(
            f"Dispatched {request_type}: {'ok' if result.success else result.error}",
            extra={**extra, "duration_ms": result.duration_ms},
        )
        return result

    async def refresh(self, skill_ids: list[str], workspace_id: str) -> list[str]:
        """
        Rerun stale skills, then invalidate the state cache.

        Failures are logged and the caller proceeds with existing evidence.

        Returns:
            Ids of skills that refreshed successfully
        """
        refreshed: list[str] = []
        try:
            for skill_id in skill_ids:
                try:
                    run = await asyncio.wait_for(
                        surface_inner_timeouts(self.skills.execute_skill(skill_id, workspace_id), step_id=skill_id),
                        timeout=self.refresh_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Refresh of {skill_id} timed out after {self.refresh_timeout_seconds:g}s",
                        extra={"workspace_id": workspace_id, "skill_id": skill_id},
                    )
                    continue
                except Exception as e:
                    logger.warning(
                        f"Refresh of {skill_id} failed: {describe_error(e)}",
                        extra={"workspace_id": workspace_id, "skill_id": skill_id},
                    )
                    continue
                if run.status is RunStatus.FAILED:
                    logger.warning(
                        f"Refresh of {skill_id} finished failed: {'; '.join(run.errors)}",
                        extra={"workspace_id": workspace_id, "skill_id": skill_id},
                    )
                else:
                    refreshed.append(skill_id)
        finally:
            self.states.invalidate(workspace_id)
        return refreshed

    # =========================================================================
    # Branches
    # =========================================================================

    async def _evidence_inquiry(self, decision: RouterDecision, workspace_id: str) -> ExecutionResult:
        kind = RequestType.EVIDENCE_INQUIRY.value

        if decision.target_metric == "workspace_status":
            state = await self.states.get_state(workspace_id)
            return ExecutionResult(
                type=kind,
                success=True,
                data={"response_type": "workspace_status", "state": state.to_dict()},
            )

        skill_id = decision.target_skill
        if not skill_id:
            return ExecutionResult.failure(kind, "No target skill identified")

        run = await self.store.latest_run(workspace_id, skill_id)
        if run is None:
            return ExecutionResult.failure(kind, f"No evidence found for {skill_id}")

        evidence = copy.deepcopy(run.evidence or {})
        as_of = run.completed_at.isoformat() if run.completed_at else None

        if decision.target_metric:
            return ExecutionResult(
                type=kind,
                success=True,
                data={
                    "response_type": "metric_drill_through",
                    "skill_id": skill_id,
                    "metric": decision.target_metric,
                    "value": extract_metric(evidence, decision.target_metric),
                    "evidence_snapshot": evidence,
                    "as_of": as_of,
                },
            )

        if decision.target_entity_id:
            filtered = filter_evidence_by_entity(evidence, decision.target_entity_id)
            return ExecutionResult(
                type=kind,
                success=True,
                data={
                    "response_type": "entity_evidence",
                    "skill_id": skill_id,
                    "entity": decision.target_entity_id,
                    "claims": filtered["claims"],
                    "records": filtered["evaluated_records"],
                    "as_of": as_of,
                },
            )

        return ExecutionResult(
            type=kind,
            success=True,
            data={"response_type": "full_evidence", "skill_id": skill_id, "evidence": evidence, "as_of": as_of},
        )

    async def _scoped_analysis(self, decision: RouterDecision, workspace_id: str) -> ExecutionResult:
        kind = RequestType.SCOPED_ANALYSIS.value

        bundle: dict[str, dict[str, Any]] = {}
        for skill_id in decision.skills_to_consult:
            run = await self.store.latest_run(workspace_id, skill_id)
            # Skills without evidence are left out.
            if run is not None and run.evidence is not None:
                bundle[skill_id] = copy.deepcopy(run.evidence)

        if decision.scope_entity:
            bundle = {k: filter_evidence_by_entity(v, decision.scope_entity) for k, v in bundle.items()}

        prompt = build_scoped_analysis_prompt(
            decision.scope_question or "",
            decision.scope_type or "pipeline",
            decision.scope_entity,
            bundle,
        )
        client = self.models.for_tier(ModelTier.SYNTHESIZE)
        response = await client.complete(
            SCOPED_ANALYSIS_SYSTEM_PROMPT,
            [Message.user(prompt)],
            max_tokens=self.scoped_max_tokens,
            temperature=self.scoped_temperature,
        )
        if not response.ok:
            return ExecutionResult(
                type=kind,
                success=False,
                error=f"Synthesis failed ({response.status}): {response.error}",
                tokens_used=response.usage.total_tokens,
            )

        return ExecutionResult(
            type=kind,
            success=True,
            data={
                "response_type": "scoped_analysis",
                "question": decision.scope_question,
                "scope": {"type": decision.scope_type, "entity": decision.scope_entity},
                "answer": response.content or "",
                "evidence_consulted": list(bundle),
            },
            tokens_used=response.usage.total_tokens,
        )

    async def _deliverable_request(self, decision: RouterDecision, workspace_id: str) -> ExecutionResult:
        kind = RequestType.DELIVERABLE_REQUEST.value
        template_id = decision.deliverable_type or decision.template_id

        state = await self.states.get_state(workspace_id)
        readiness = state.template_readiness.get(template_id or "")
        if readiness is None:
            return ExecutionResult.failure(kind, f"Unknown deliverable type: {template_id}")

        if not readiness.ready:
            return ExecutionResult.failure(
                kind,
                readiness.reason or "Template not ready",
                data={
                    "response_type": "template_not_ready",
                    "template_id": template_id,
                    "ready": False,
                    "missing_skills": list(readiness.missing_skills),
                    "suggestion": f"Run these skills first: {', '.join(readiness.missing_skills)}",
                },
            )

        if self.pipeline is None:
            return ExecutionResult.failure(kind, "No deliverable pipeline configured")

        try:
            generated = await self.pipeline(workspace_id, template_id)
        except Exception as e:
            logger.error(
                f"Deliverable generation failed for {template_id}: {describe_error(e)}",
                extra={"workspace_id": workspace_id},
            )
            return ExecutionResult.failure(kind, f"Generation failed: {describe_error(e)}")

        return ExecutionResult(
            type=kind,
            success=True,
            data={
                "response_type": "deliverable_generated",
                "template_id": template_id,
                "template_name": readiness.template_name,
                "ready": True,
                "stale_skills": list(readiness.stale_skills),
                "degraded_dimensions": list(readiness.degraded_dimensions),
                "summary": generated.summary,
                "result": generated.payload,
            },
            tokens_used=generated.tokens_used,
            duration_ms=generated.duration_ms,
        )

    async def _skill_execution(self, decision: RouterDecision, workspace_id: str) -> ExecutionResult:
        kind = RequestType.SKILL_EXECUTION.value
        skill_id = decision.skill_id
        if not skill_id:
            return ExecutionResult.failure(kind, "No skill specified")
        try:
            skill = self.skills.skills.get(skill_id)
        except ConfigurationError as e:
            return ExecutionResult.failure(kind, e.message)

        task = asyncio.create_task(self.skills.execute_skill(skill, workspace_id, dict(decision.skill_params)))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        return ExecutionResult(
            type=kind,
            success=True,
            data={
                "response_type": "skill_started",
                "skill_id": skill_id,
                "message": f"Running {skill.name or format_skill_name(skill_id)}...",
            },
        )

    def _task_done(self, task: asyncio.Task[SkillRunResult]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background skill run failed: {describe_error(error)}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background skill run started by this dispatcher."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["Dispatcher", "build_scoped_analysis_prompt", "SCOPED_ANALYSIS_SYSTEM_PROMPT"]
