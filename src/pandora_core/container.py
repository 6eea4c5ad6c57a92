"""
Factories and the wired-up orchestration core.

Registries are built by the caller at process start and passed in; this
module only connects them to the runtimes, the store and the state index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .agents.registry import AgentRegistry
from .agents.runtime import AgentRuntime
from .config import DatabaseConfig, DeliveryConfig, ModelConfig, Settings
from .delivery.base import ChannelRegistry
from .delivery.log import LogChannel
from .delivery.slack import SlackWebhookChannel
from .llm.base import ModelRouter
from .logging import configure_logging
from .llm.openai import OpenAIModelClient
from .llm.types import ModelTier
from .router.dispatcher import Dispatcher
from .router.types import DeliverablePipeline
from .skills.evidence import EvidenceRegistry
from .skills.registry import SkillRegistry
from .skills.runtime import ContextProvider, SkillRuntime
from .skills.types import SkillRunResult
from .state.index import WorkspaceStateService
from .storage.base import RunStore
from .storage.memory import InMemoryRunStore
from .storage.postgres import PostgresRunStore
from .templating import TemplateRenderer
from .tools.base import ToolRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Factories
# =============================================================================


def create_model_router(config: ModelConfig) -> ModelRouter:
    """OpenAI clients for both tiers, with the configured temperatures."""
    return ModelRouter(
        {
            ModelTier.CLASSIFY: OpenAIModelClient.from_config(config, model=config.classify_model),
            ModelTier.SYNTHESIZE: OpenAIModelClient.from_config(config, model=config.synthesize_model),
        },
        temperatures={
            ModelTier.CLASSIFY: config.classify_temperature,
            ModelTier.SYNTHESIZE: config.synthesize_temperature,
        },
    )


async def create_store(config: DatabaseConfig) -> RunStore:
    """Postgres when a DSN is configured, otherwise an in-memory store."""
    if config.dsn:
        return await PostgresRunStore.connect(
            config.dsn, skill_table=config.skill_runs_table, agent_table=config.agent_runs_table
        )
    logger.warning("No database DSN configured; run history is kept in memory")
    return InMemoryRunStore()


def create_channels(config: DeliveryConfig) -> ChannelRegistry:
    channels = ChannelRegistry([LogChannel(max_message_chars=config.max_message_chars)])
    channels.register(LogChannel(max_message_chars=config.max_message_chars), name="api")
    channels.register(SlackWebhookChannel.from_config(config))
    return channels


# =============================================================================
# Core
# =============================================================================


@dataclass
class Core:
    """The four public entry points, wired to shared collaborators."""

    settings: Settings
    store: RunStore
    skill_runtime: SkillRuntime
    agent_runtime: AgentRuntime
    states: WorkspaceStateService
    dispatcher: Dispatcher

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        tools: ToolRegistry,
        skills: SkillRegistry,
        agents: AgentRegistry,
        store: RunStore,
        models: ModelRouter | None = None,
        channels: ChannelRegistry | None = None,
        evidence: EvidenceRegistry | None = None,
        context_provider: ContextProvider | None = None,
        pipeline: DeliverablePipeline | None = None,
    ) -> Core:
        """
        Wire the runtimes together.

        Every finished skill run invalidates the state index for its
        workspace, so readiness reflects new evidence on the next read.
        """
        configure_logging(settings.logging.level, settings.logging.format)
        models = models or create_model_router(settings.model)
        states = WorkspaceStateService(store, skills, config=settings.state)

        async def invalidate_state(result: SkillRunResult) -> None:
            states.invalidate(result.workspace_id)

        skill_runtime = SkillRuntime(
            tools=tools,
            skills=skills,
            models=models,
            store=store,
            evidence=evidence,
            config=settings.runtime,
            context_provider=context_provider,
            on_complete=invalidate_state,
            renderer=TemplateRenderer(settings.runtime.max_list_items, settings.runtime.max_json_chars),
        )
        agent_runtime = AgentRuntime(
            agents=agents,
            skills=skill_runtime,
            models=models,
            store=store,
            channels=channels or create_channels(settings.delivery),
            config=settings.agent,
        )
        dispatcher = Dispatcher(
            store=store,
            states=states,
            skills=skill_runtime,
            models=models,
            pipeline=pipeline,
        )
        return cls(
            settings=settings,
            store=store,
            skill_runtime=skill_runtime,
            agent_runtime=agent_runtime,
            states=states,
            dispatcher=dispatcher,
        )

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.agent_runtime.channels.close()
        await self.store.close()


__all__ = ["Core", "create_model_router", "create_store", "create_channels"]
