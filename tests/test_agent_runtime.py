"""
Tests for the agent runtime: sequencing, synthesis and delivery.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from types import SimpleNamespace

import pytest

from pandora_core.agents import (
    AgentDefinition,
    AgentRegistry,
    AgentRuntime,
    AgentSkillStep,
    AgentStatus,
    DeliveryTarget,
    SynthesisConfig,
)
from pandora_core.config import AgentConfig
from pandora_core.delivery.base import ChannelRegistry
from pandora_core.errors import AgentExecutionError, ConfigurationError
from pandora_core.llm.base import ModelRouter
from pandora_core.skills import (
    ComputeStep,
    SkillDefinition,
    SkillRegistry,
    SkillRunResult,
    SkillRuntime,
    StepDefinition,
    StepStatus,
)
from pandora_core.storage.base import RunKind, RunStatus
from pandora_core.tools.base import Tool, ToolRegistry
from tests.conftest import FakeModelClient, RecordingChannel, make_completion_result

WS = "ws_1"

SKILL_RESULTS = {
    "s1": {"deals_at_risk": 3},
    "s2": {"coverage_ratio": 2.4},
    "s3": {"forecast": 1_200_000},
}


def compute_skill(skill_id: str) -> SkillDefinition:
    return SkillDefinition(
        id=skill_id,
        name=skill_id.upper(),
        steps=(StepDefinition(id="collect", payload=ComputeStep(tool_id=f"collect_{skill_id}")),),
    )


def make_agent(*steps: AgentSkillStep, **kwargs) -> AgentDefinition:
    kwargs.setdefault("status", AgentStatus.PUBLISHED)
    return AgentDefinition(id="weekly-briefing", name="Weekly Briefing", skills=steps, **kwargs)


@pytest.fixture
def env(store):
    """Skills s1..s3 backed by compute tools whose delay and failure are adjustable."""
    delays = {skill_id: 0.0 for skill_id in SKILL_RESULTS}
    failing: set[str] = set()

    def collector(skill_id):
        async def collect():
            if delays[skill_id]:
                await asyncio.sleep(delays[skill_id])
            if skill_id in failing:
                raise RuntimeError(f"{skill_id} source unavailable")
            return dict(SKILL_RESULTS[skill_id])

        return Tool(name=f"collect_{skill_id}", handler=collect)

    tools = ToolRegistry([collector(skill_id) for skill_id in SKILL_RESULTS])
    skills = SkillRegistry(tools, skills=[compute_skill(skill_id) for skill_id in SKILL_RESULTS])
    synthesize = FakeModelClient([make_completion_result("Weekly briefing: 3 deals at risk.")])
    models = ModelRouter.single(synthesize)
    skill_runtime = SkillRuntime(tools=tools, skills=skills, models=models, store=store)
    channel = RecordingChannel()
    agents = AgentRegistry()

    def build(agent: AgentDefinition, **kwargs) -> AgentRuntime:
        agents.register(agent)
        return AgentRuntime(
            agents=agents,
            skills=skill_runtime,
            models=models,
            store=store,
            channels=ChannelRegistry([channel]),
            **kwargs,
        )

    return SimpleNamespace(
        delays=delays,
        failing=failing,
        synthesize=synthesize,
        channel=channel,
        agents=agents,
        store=store,
        build=build,
    )


class TestSequencing:
    """Step order, required and optional failures."""

    async def test_all_steps_complete(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), AgentSkillStep("s2")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.COMPLETED
        assert [r.skill_id for r in result.skill_results] == ["s1", "s2"]
        assert all(r.status is StepStatus.COMPLETED for r in result.skill_results)
        assert set(result.skill_outputs) == {"s1", "s2"}
        assert result.synthesized_output == "Weekly briefing: 3 deals at risk."
        assert result.delivery.status == "delivered"

    async def test_optional_timeout_gives_partial(self, env):
        """S1 finishes inside its deadline, optional S2 never does."""
        env.delays["s1"] = 0.02
        env.delays["s2"] = 10.0
        runtime = env.build(
            make_agent(
                AgentSkillStep("s1", required=True, timeout_seconds=1.0),
                AgentSkillStep("s2", required=False, timeout_seconds=0.1),
            )
        )

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.PARTIAL
        assert result.step("s1").status is StepStatus.COMPLETED
        assert result.step("s2").status is StepStatus.FAILED
        assert result.step("s2").error == "Skill 's2' timed out after 0.1s"
        assert list(result.skill_outputs) == ["s1"]

        prompt = env.synthesize.prompt()
        assert "## s1" in prompt
        assert "deals_at_risk" in prompt
        assert "## s2" not in prompt

    async def test_timeout_raised_inside_skill_keeps_its_message(self, env):
        class WarehouseSkills:
            async def execute_skill(self, skill_id, workspace_id, params=None):
                raise TimeoutError("warehouse query timed out")

        runtime = env.build(make_agent(AgentSkillStep("s1", timeout_seconds=5.0)))
        runtime.skills = WarehouseSkills()

        with pytest.raises(AgentExecutionError) as exc_info:
            await runtime.execute_agent("weekly-briefing", WS)

        step = exc_info.value.result.step("s1")
        assert step.status is StepStatus.FAILED
        assert step.error == "TimeoutError: warehouse query timed out"

    async def test_required_failure_aborts(self, env):
        env.failing.add("s1")
        runtime = env.build(make_agent(AgentSkillStep("s1"), AgentSkillStep("s2")))

        with pytest.raises(AgentExecutionError) as exc_info:
            await runtime.execute_agent("weekly-briefing", WS)

        error = exc_info.value
        assert error.step_id == "s1"
        assert "Required skill s1 failed" in error.message
        assert "s1 source unavailable" in error.message
        assert error.result.status is RunStatus.FAILED
        assert [r.skill_id for r in error.result.skill_results] == ["s1"]
        assert env.synthesize.call_count == 0

        record = await env.store.get_run(error.result.run_id)
        assert record.kind is RunKind.AGENT
        assert record.status is RunStatus.FAILED

    async def test_optional_failure_continues(self, env):
        env.failing.add("s2")
        runtime = env.build(make_agent(AgentSkillStep("s1"), AgentSkillStep("s2", required=False), AgentSkillStep("s3")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.PARTIAL
        assert [r.status for r in result.skill_results] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.COMPLETED,
        ]
        assert "s2 source unavailable" in result.step("s2").error

    async def test_unknown_skill_is_a_step_failure(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), AgentSkillStep("ghost", required=False)))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.PARTIAL
        assert result.step("ghost").error == "Unknown skill: ghost"

    async def test_run_pins_definition(self, env):
        env.delays["s1"] = 0.1
        agent = make_agent(AgentSkillStep("s1"))
        runtime = env.build(agent)

        task = asyncio.create_task(runtime.execute_agent("weekly-briefing", WS))
        await asyncio.sleep(0.02)
        updated = env.agents.update(replace(agent, name="Renamed", skills=(AgentSkillStep("s2"),)))
        result = await task

        assert updated.version == 2
        assert result.agent_version == 1
        assert [r.skill_id for r in result.skill_results] == ["s1"]

    async def test_persisted_record(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1")))

        result = await runtime.execute_agent("weekly-briefing", WS, dry_run=True)

        record = await env.store.get_run(result.run_id)
        assert record.status is RunStatus.COMPLETED
        assert record.params == {"dry_run": True, "agent_version": 1}
        assert record.output["skill_runs"]["s1"] == result.skill_outputs["s1"].run_id
        assert record.token_usage["synthesis"] == 15


class TestResolve:
    async def test_unpublished_agent(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), status=AgentStatus.DRAFT))
        with pytest.raises(ConfigurationError, match="not published"):
            await runtime.execute_agent("weekly-briefing", WS)

    async def test_disabled_agent(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), enabled=False))
        with pytest.raises(ConfigurationError, match="disabled"):
            await runtime.execute_agent("weekly-briefing", WS)

    async def test_workspace_scope(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), workspace_ids=("ws_other",)))
        with pytest.raises(ConfigurationError, match="does not apply"):
            await runtime.execute_agent("weekly-briefing", WS)

    async def test_unknown_agent(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1")))
        with pytest.raises(ConfigurationError, match="Unknown agent"):
            await runtime.execute_agent("missing", WS)


class TestSynthesis:
    async def test_output_key_slots_and_placeholders(self, env):
        env.failing.add("s3")
        agent = make_agent(
            AgentSkillStep("s1", output_key="risk"),
            AgentSkillStep("s3", output_key="forecast", required=False),
            synthesis=SynthesisConfig(prompt_template="Risk:\n{{ risk }}\nForecast:\n{{ forecast }}"),
        )
        runtime = env.build(agent)

        await runtime.execute_agent("weekly-briefing", WS)

        prompt = env.synthesize.prompt()
        assert '"deals_at_risk": 3' in prompt
        assert "[unavailable: s3 did not complete]" in prompt

    async def test_slots_are_truncated(self, env):
        agent = make_agent(AgentSkillStep("s1"))
        runtime = env.build(agent, config=AgentConfig(synthesis_slot_chars=20, source_chars=10))
        result = SimpleNamespace(
            workspace_id=WS,
            skill_outputs={
                "s1": SkillRunResult(run_id="run_x", workspace_id=WS, skill_id="s1", narrative="n" * 50),
            },
        )

        slots = runtime.build_synthesis_slots(agent, result)

        assert slots["s1"] == "n" * 20 + "\n... [truncated]"
        assert slots["skill_outputs"] == "## s1\n" + "n" * 10 + "\n... [truncated]"
        assert slots["agent_name"] == "Weekly Briefing"

    async def test_synthesis_failure_gives_partial(self, env):
        env.synthesize._responses = [RuntimeError("model overloaded")]
        runtime = env.build(make_agent(AgentSkillStep("s1")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.PARTIAL
        assert result.error == "Synthesis failed: model overloaded"
        assert result.synthesized_output is None
        assert result.delivery.status == "skipped"

    async def test_synthesis_disabled(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), synthesis=SynthesisConfig(enabled=False)))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.COMPLETED
        assert env.synthesize.call_count == 0
        assert result.delivery.status == "skipped"
        assert env.channel.texts == []

    async def test_token_usage(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), AgentSkillStep("s2")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.token_usage == {"skills": 0, "synthesis": 15, "total": 15}


class TestDelivery:
    async def test_text_delivery_with_title(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.delivery.messages == 1
        text, target = env.channel.texts[0]
        assert text.startswith("*Weekly Briefing*\n\n")
        assert target is None

    async def test_dry_run_skips_delivery(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1")))

        result = await runtime.execute_agent("weekly-briefing", WS, dry_run=True)

        assert result.synthesized_output is not None
        assert result.delivery.status == "skipped"
        assert env.channel.texts == []

    async def test_long_narrative_is_chunked(self, env):
        env.channel.max_message_chars = 100
        lines = [f"{i}. Deal {i} has been idle for {i * 7} days and needs a next step." for i in range(1, 9)]
        env.synthesize._responses = [make_completion_result("\n".join(lines))]
        runtime = env.build(make_agent(AgentSkillStep("s1"), delivery=DeliveryTarget(target="#revops")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.delivery.messages == len(env.channel.texts) > 1
        assert all(len(text) <= 100 for text, _ in env.channel.texts)
        assert all(target == "#revops" for _, target in env.channel.texts)
        delivered = "\n".join(text for text, _ in env.channel.texts)
        for line in lines:
            assert line in delivered

    async def test_blocks_format(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), delivery=DeliveryTarget(format="blocks")))

        await runtime.execute_agent("weekly-briefing", WS)

        blocks = env.channel.blocks[0]
        assert blocks[0] == {"type": "header", "text": {"type": "plain_text", "text": "Weekly Briefing"}}
        assert any(b["type"] == "section" for b in blocks)

    async def test_delivery_failure_is_recorded(self, env):
        env.channel.fail = True
        runtime = env.build(make_agent(AgentSkillStep("s1")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.status is RunStatus.COMPLETED
        assert result.delivery.status == "failed"
        assert "rejected" in result.delivery.error

    async def test_unknown_channel(self, env):
        runtime = env.build(make_agent(AgentSkillStep("s1"), delivery=DeliveryTarget(channel="email")))

        result = await runtime.execute_agent("weekly-briefing", WS)

        assert result.delivery.status == "failed"
        assert result.delivery.error == "Unknown delivery channel: email"
