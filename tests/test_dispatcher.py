"""
Tests for the router dispatcher.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from pandora_core.llm.base import ModelRouter
from pandora_core.router import DeliverableResult, Dispatcher, RouterDecision, filter_evidence_by_entity
from pandora_core.router.evidence import extract_metric
from pandora_core.state import WorkspaceStateService
from pandora_core.storage.base import RunStatus
from tests.conftest import FakeModelClient, make_completion_result, make_run_record

WS = "ws_1"

HYGIENE_EVIDENCE = {
    "claims": [
        {
            "claim_id": "stale_deals",
            "claim_text": "4 deals at Acme Corp have been idle for 30+ days",
            "severity": "warning",
            "metric_name": "stale_deal_count",
            "entity_ids": ["acme"],
        },
        {"claim_id": "missing_close", "claim_text": "Globex has no close date", "severity": "critical"},
    ],
    "evaluated_records": [
        {"entity_name": "Acme Corp", "deal_name": "Acme Renewal", "amount": 50000},
        {"entity_name": "Globex", "deal_name": "Globex Expansion", "amount": 12000},
    ],
    "data_sources": [{"source": "hubspot", "connected": True, "records_considered": 120}],
    "parameters": {"stale_threshold_days": 30},
}


def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def scoped_client():
    return FakeModelClient([make_completion_result("Acme needs a follow-up this week.")])


@pytest.fixture
def states(store):
    return WorkspaceStateService(store)


@pytest.fixture
def dispatcher(store, states, skill_runtime, scoped_client):
    return Dispatcher(store=store, states=states, skills=skill_runtime, models=ModelRouter.single(scoped_client))


async def seed(store, skill_id, evidence=None, *, age=timedelta(hours=1)):
    await store.insert_run(make_run_record(WS, skill_id, completed_at=now() - age, evidence=evidence))


class TestEvidenceInquiry:
    async def test_full_evidence(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        result = await dispatcher.dispatch(
            RouterDecision(type="evidence_inquiry", target_skill="pipeline-hygiene"), WS
        )

        assert result.success is True
        assert result.data["response_type"] == "full_evidence"
        assert result.data["evidence"] == HYGIENE_EVIDENCE
        assert result.data["as_of"] is not None
        assert result.tokens_used == 0
        assert result.duration_ms is not None

    async def test_repeated_reads_are_identical(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)
        decision = RouterDecision(type="evidence_inquiry", target_skill="pipeline-hygiene")

        first = await dispatcher.dispatch(decision, WS)
        first.data["evidence"]["claims"].clear()
        second = await dispatcher.dispatch(decision, WS)

        assert second.data["evidence"] == HYGIENE_EVIDENCE

    async def test_metric_drill_through(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        result = await dispatcher.dispatch(
            RouterDecision(
                type="evidence_inquiry", target_skill="pipeline-hygiene", target_metric="stale_threshold_days"
            ),
            WS,
        )

        assert result.data["response_type"] == "metric_drill_through"
        assert result.data["value"] == 30

    async def test_entity_evidence(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        result = await dispatcher.dispatch(
            RouterDecision(type="evidence_inquiry", target_skill="pipeline-hygiene", target_entity_id="acme"),
            WS,
        )

        assert result.data["response_type"] == "entity_evidence"
        assert [c["claim_id"] for c in result.data["claims"]] == ["stale_deals"]
        assert [r["deal_name"] for r in result.data["records"]] == ["Acme Renewal"]

    async def test_no_target_skill(self, dispatcher):
        result = await dispatcher.dispatch(RouterDecision(type="evidence_inquiry"), WS)
        assert result.success is False
        assert result.error == "No target skill identified"

    async def test_no_evidence(self, dispatcher):
        result = await dispatcher.dispatch(RouterDecision(type="evidence_inquiry", target_skill="icp-discovery"), WS)
        assert result.success is False
        assert result.error == "No evidence found for icp-discovery"

    async def test_failed_runs_are_not_evidence(self, dispatcher, store):
        await store.insert_run(
            make_run_record(WS, "lead-scoring", completed_at=now(), evidence=HYGIENE_EVIDENCE, status=RunStatus.FAILED)
        )
        result = await dispatcher.dispatch(RouterDecision(type="evidence_inquiry", target_skill="lead-scoring"), WS)
        assert result.success is False

    async def test_workspace_status(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        result = await dispatcher.dispatch(
            RouterDecision(type="evidence_inquiry", target_metric="workspace_status"), WS
        )

        state = result.data["state"]
        assert result.data["response_type"] == "workspace_status"
        assert state["skill_states"]["pipeline-hygiene"]["has_evidence"] is True
        assert state["skill_states"]["pipeline-hygiene"]["claim_count"] == 2


class TestScopedAnalysis:
    async def test_single_synthesis_call(self, dispatcher, store, scoped_client):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)
        await seed(store, "single-thread-alert", {"claims": [{"claim_text": "Acme is single-threaded"}]})

        result = await dispatcher.dispatch(
            RouterDecision(
                type="scoped_analysis",
                skills_to_consult=["pipeline-hygiene", "single-thread-alert", "icp-discovery"],
                scope_question="What should we do about our pipeline?",
                scope_type="pipeline",
            ),
            WS,
        )

        assert result.success is True
        assert scoped_client.call_count == 1
        assert result.data["answer"] == "Acme needs a follow-up this week."
        assert result.data["evidence_consulted"] == ["pipeline-hygiene", "single-thread-alert"]
        assert result.tokens_used == 15

        prompt = scoped_client.prompt()
        assert prompt.startswith("Question: What should we do about our pipeline?")
        assert "--- Pipeline Hygiene ---" in prompt
        assert "[warning] 4 deals at Acme Corp" in prompt
        assert "Icp Discovery" not in prompt

    async def test_entity_scope_filters_evidence(self, dispatcher, store, scoped_client):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        await dispatcher.dispatch(
            RouterDecision(
                type="scoped_analysis",
                skills_to_consult=["pipeline-hygiene"],
                scope_question="How is Acme doing?",
                scope_type="account",
                scope_entity="Acme",
            ),
            WS,
        )

        prompt = scoped_client.prompt()
        assert "Scope: account (Acme)" in prompt
        assert "Acme Corp" in prompt
        assert "Globex" not in prompt

    async def test_no_evidence_still_asks_model(self, dispatcher, scoped_client):
        result = await dispatcher.dispatch(
            RouterDecision(type="scoped_analysis", skills_to_consult=["icp-discovery"], scope_question="Who to target?"),
            WS,
        )

        assert result.success is True
        assert result.data["evidence_consulted"] == []
        assert "No skill has produced evidence" in scoped_client.prompt()

    async def test_model_failure(self, store, states, skill_runtime):
        client = FakeModelClient([make_completion_result(None, status=503, error="overloaded")])
        dispatcher = Dispatcher(store=store, states=states, skills=skill_runtime, models=ModelRouter.single(client))

        result = await dispatcher.dispatch(
            RouterDecision(type="scoped_analysis", skills_to_consult=[], scope_question="Anything?"), WS
        )

        assert result.success is False
        assert "503" in result.error

    async def test_model_exception_becomes_failure(self, store, states, skill_runtime):
        client = FakeModelClient([RuntimeError("connection reset")])
        dispatcher = Dispatcher(store=store, states=states, skills=skill_runtime, models=ModelRouter.single(client))

        result = await dispatcher.dispatch(
            RouterDecision(type="scoped_analysis", skills_to_consult=[], scope_question="Anything?"), WS
        )

        assert result.success is False
        assert result.error == "connection reset"
        assert result.duration_ms is not None


class TestDeliverableRequest:
    async def _ready_pipeline_audit(self, store):
        for skill_id in ("pipeline-hygiene", "single-thread-alert", "data-quality-audit"):
            await seed(store, skill_id, {"claims": []})

    async def test_not_ready(self, dispatcher, store):
        await seed(store, "pipeline-hygiene")

        result = await dispatcher.dispatch(
            RouterDecision(type="deliverable_request", deliverable_type="pipeline_audit"), WS
        )

        assert result.success is False
        assert result.error.startswith("Missing required skills: single-thread-alert, data-quality-audit")
        assert result.data["missing_skills"] == ["single-thread-alert", "data-quality-audit"]
        assert result.data["ready"] is False

    async def test_readiness_follows_required_evidence(self, store, states, skill_runtime, scoped_client):
        """Every required skill present is ready; losing one names exactly that skill."""
        records = {}
        for skill_id in ("pipeline-hygiene", "single-thread-alert", "data-quality-audit"):
            records[skill_id] = make_run_record(WS, skill_id, completed_at=now() - timedelta(hours=1), evidence={})
            await store.insert_run(records[skill_id])

        async def pipeline(workspace_id, template_id):
            return DeliverableResult(summary={}, payload={})

        dispatcher = Dispatcher(
            store=store, states=states, skills=skill_runtime, models=ModelRouter.single(scoped_client), pipeline=pipeline
        )
        decision = RouterDecision(type="deliverable_request", deliverable_type="pipeline_audit")

        ready = await dispatcher.dispatch(decision, WS)
        assert ready.success is True
        assert ready.data["ready"] is True

        lost = records["single-thread-alert"]
        lost.status = RunStatus.FAILED
        await store.update_run(lost)
        states.invalidate(WS)

        not_ready = await dispatcher.dispatch(decision, WS)
        assert not_ready.success is False
        assert not_ready.data["ready"] is False
        assert not_ready.data["missing_skills"] == ["single-thread-alert"]

    async def test_unknown_template(self, dispatcher):
        result = await dispatcher.dispatch(RouterDecision(type="deliverable_request", deliverable_type="board_deck"), WS)
        assert result.error == "Unknown deliverable type: board_deck"

    async def test_no_pipeline(self, dispatcher, store):
        await self._ready_pipeline_audit(store)
        result = await dispatcher.dispatch(
            RouterDecision(type="deliverable_request", template_id="pipeline_audit"), WS
        )
        assert result.error == "No deliverable pipeline configured"

    async def test_generated(self, store, states, skill_runtime, scoped_client):
        await self._ready_pipeline_audit(store)
        calls = []

        async def pipeline(workspace_id, template_id):
            calls.append((workspace_id, template_id))
            return DeliverableResult(summary={"sections": 4}, payload={"title": "Pipeline Audit"}, tokens_used=900)

        dispatcher = Dispatcher(
            store=store, states=states, skills=skill_runtime, models=ModelRouter.single(scoped_client), pipeline=pipeline
        )
        result = await dispatcher.dispatch(
            RouterDecision(type="deliverable_request", deliverable_type="pipeline_audit"), WS
        )

        assert result.success is True
        assert calls == [(WS, "pipeline_audit")]
        assert result.data["response_type"] == "deliverable_generated"
        assert result.data["summary"] == {"sections": 4}
        assert result.data["result"] == {"title": "Pipeline Audit"}
        assert result.tokens_used == 900

    async def test_pipeline_failure(self, store, states, skill_runtime, scoped_client):
        await self._ready_pipeline_audit(store)

        async def pipeline(workspace_id, template_id):
            raise RuntimeError("renderer crashed")

        dispatcher = Dispatcher(
            store=store, states=states, skills=skill_runtime, models=ModelRouter.single(scoped_client), pipeline=pipeline
        )
        result = await dispatcher.dispatch(
            RouterDecision(type="deliverable_request", deliverable_type="pipeline_audit"), WS
        )

        assert result.success is False
        assert result.error == "Generation failed: renderer crashed"


class TestSkillExecution:
    async def test_starts_in_background(self, dispatcher, store):
        result = await dispatcher.dispatch(
            RouterDecision(type="skill_execution", skill_id="pipeline-hygiene", skill_params={"window_days": 7}), WS
        )

        assert result.success is True
        assert result.data == {
            "response_type": "skill_started",
            "skill_id": "pipeline-hygiene",
            "message": "Running Pipeline Hygiene...",
        }

        await dispatcher.drain()
        assert dispatcher.pending == 0
        run = await store.latest_run(WS, "pipeline-hygiene")
        assert run is not None
        assert run.params == {"window_days": 7}

    async def test_unknown_skill(self, dispatcher):
        result = await dispatcher.dispatch(RouterDecision(type="skill_execution", skill_id="ghost"), WS)
        assert result.success is False
        assert result.error == "Unknown skill: ghost"
        assert dispatcher.pending == 0

    async def test_no_skill(self, dispatcher):
        result = await dispatcher.dispatch(RouterDecision(type="skill_execution"), WS)
        assert result.error == "No skill specified"


class TestRefresh:
    async def test_refresh_runs_before_branch(self, dispatcher, states):
        before = await states.get_state(WS)
        assert before.skill_states["pipeline-hygiene"].has_evidence is False

        result = await dispatcher.dispatch(
            RouterDecision(
                type="evidence_inquiry",
                target_metric="workspace_status",
                stale_skills_to_rerun=["pipeline-hygiene"],
            ),
            WS,
        )

        assert result.data["state"]["skill_states"]["pipeline-hygiene"]["has_evidence"] is True

    async def test_refresh_failure_falls_back_to_existing_evidence(self, dispatcher, store):
        await seed(store, "pipeline-hygiene", HYGIENE_EVIDENCE)

        result = await dispatcher.dispatch(
            RouterDecision(
                type="evidence_inquiry", target_skill="pipeline-hygiene", stale_skills_to_rerun=["ghost"]
            ),
            WS,
        )

        assert result.success is True
        assert result.data["evidence"] == HYGIENE_EVIDENCE

    async def test_refresh_timeout(self, store, states, skill_runtime, hygiene_tools, scoped_client):
        _, tool_state = hygiene_tools
        tool_state["b_delay"] = 5.0
        dispatcher = Dispatcher(
            store=store,
            states=states,
            skills=skill_runtime,
            models=ModelRouter.single(scoped_client),
            refresh_timeout_seconds=0.05,
        )

        refreshed = await dispatcher.refresh(["pipeline-hygiene"], WS)
        assert refreshed == []

    async def test_timeout_inside_skill_is_reported_as_failure(self, store, states, scoped_client, caplog):
        class WarehouseSkills:
            async def execute_skill(self, skill_id, workspace_id, params=None):
                raise TimeoutError("warehouse query timed out")

        dispatcher = Dispatcher(
            store=store, states=states, skills=WarehouseSkills(), models=ModelRouter.single(scoped_client)
        )

        with caplog.at_level(logging.WARNING, logger="pandora_core.router.dispatcher"):
            refreshed = await dispatcher.refresh(["pipeline-hygiene"], WS)

        assert refreshed == []
        messages = [r.getMessage() for r in caplog.records]
        assert "Refresh of pipeline-hygiene failed: TimeoutError: warehouse query timed out" in messages
        assert not any("timed out after" in m for m in messages)

    async def test_refresh_can_be_disabled(self, store, states, skill_runtime, scoped_client):
        dispatcher = Dispatcher(
            store=store, states=states, skills=skill_runtime, models=ModelRouter.single(scoped_client), refresh_stale=False
        )
        await dispatcher.dispatch(
            RouterDecision(type="evidence_inquiry", target_skill="x", stale_skills_to_rerun=["pipeline-hygiene"]), WS
        )
        assert await store.latest_run(WS, "pipeline-hygiene") is None


async def test_unknown_request_type(dispatcher):
    result = await dispatcher.dispatch(RouterDecision(type="chit_chat"), WS)
    assert result.success is False
    assert result.error == "Unknown request type: chit_chat"


def test_decision_from_dict_ignores_unknown_keys():
    decision = RouterDecision.from_dict({"type": "skill_execution", "skill_id": "lead-scoring", "reasoning": "..."})
    assert decision.skill_id == "lead-scoring"


class TestEvidenceHelpers:
    def test_filter_does_not_mutate(self):
        filtered = filter_evidence_by_entity(HYGIENE_EVIDENCE, "GLOBEX")
        filtered["claims"][0]["claim_text"] = "changed"

        assert HYGIENE_EVIDENCE["claims"][1]["claim_text"] == "Globex has no close date"
        assert [r["deal_name"] for r in filtered["evaluated_records"]] == ["Globex Expansion"]

    def test_metric_falls_back_to_related_claims(self):
        value = extract_metric(HYGIENE_EVIDENCE, "stale_deal_count")
        assert [c["claim_id"] for c in value["claims"]] == ["stale_deals"]
        assert value["parameters"] == {"stale_threshold_days": 30}
