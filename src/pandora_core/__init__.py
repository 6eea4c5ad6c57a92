"""
Orchestration core for the Pandora business-intelligence backend.

Public operations:
- ``SkillRuntime.execute_skill``: run one skill's step graph
- ``AgentRuntime.execute_agent``: run an agent's skills, synthesize, deliver
- ``WorkspaceStateService.get_state`` / ``invalidate``: evidence freshness and readiness
- ``Dispatcher.dispatch``: execute a classified request
"""

from .agents import (
    AgentDefinition,
    AgentRegistry,
    AgentRunResult,
    AgentRuntime,
    AgentSkillStep,
    AgentStatus,
    DeliveryTarget,
    SynthesisConfig,
)
from .config import Settings, load_env
from .container import Core, create_channels, create_model_router, create_store
from .delivery import ChannelRegistry, DeliveryChannel, LogChannel, SlackWebhookChannel, chunk_text
from .errors import (
    AgentExecutionError,
    ConfigurationError,
    DeliveryError,
    ErrorCode,
    LifecycleError,
    PandoraError,
    PersistenceError,
    RecoveryWindowExpiredError,
    SchemaValidationError,
    StepExecutionError,
    StepTimeoutError,
    TemplateRenderError,
)
from .llm import CompletionResult, Message, ModelClient, ModelRouter, ModelTier, OpenAIModelClient, Usage
from .logging import bind_log_context, configure_logging, get_logger
from .router import DeliverableResult, Dispatcher, ExecutionResult, RouterDecision
from .skills import (
    ClassifyStep,
    ComputeStep,
    EvidenceBundle,
    EvidenceRegistry,
    SkillDefinition,
    SkillEvidence,
    SkillRegistry,
    SkillRunResult,
    SkillRuntime,
    StepDefinition,
    StepStatus,
    StepTier,
    SynthesizeStep,
)
from .state import WorkspaceStateIndex, WorkspaceStateService
from .storage import InMemoryRunStore, PostgresRunStore, RunKind, RunRecord, RunStatus, RunStore
from .templating import PromptTemplate, TemplateRenderer
from .tools import Tool, ToolRegistry, ToolResult, tool_from_function

__version__ = "0.1.0"

__all__ = [
    # Entry points
    "SkillRuntime",
    "AgentRuntime",
    "WorkspaceStateService",
    "Dispatcher",
    "Core",
    # Skills
    "SkillDefinition",
    "StepDefinition",
    "ComputeStep",
    "ClassifyStep",
    "SynthesizeStep",
    "StepTier",
    "StepStatus",
    "SkillRegistry",
    "SkillRunResult",
    "SkillEvidence",
    "EvidenceBundle",
    "EvidenceRegistry",
    # Agents
    "AgentDefinition",
    "AgentSkillStep",
    "AgentStatus",
    "SynthesisConfig",
    "DeliveryTarget",
    "AgentRegistry",
    "AgentRunResult",
    # State / router
    "WorkspaceStateIndex",
    "RouterDecision",
    "ExecutionResult",
    "DeliverableResult",
    # Collaborators
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "tool_from_function",
    "ModelClient",
    "ModelRouter",
    "ModelTier",
    "OpenAIModelClient",
    "Message",
    "CompletionResult",
    "Usage",
    "RunStore",
    "RunRecord",
    "RunKind",
    "RunStatus",
    "InMemoryRunStore",
    "PostgresRunStore",
    "DeliveryChannel",
    "ChannelRegistry",
    "SlackWebhookChannel",
    "LogChannel",
    "chunk_text",
    "PromptTemplate",
    "TemplateRenderer",
    # Config / logging
    "Settings",
    "load_env",
    "bind_log_context",
    "configure_logging",
    "get_logger",
    "create_model_router",
    "create_store",
    "create_channels",
    # Errors
    "PandoraError",
    "ErrorCode",
    "ConfigurationError",
    "StepExecutionError",
    "StepTimeoutError",
    "SchemaValidationError",
    "TemplateRenderError",
    "AgentExecutionError",
    "LifecycleError",
    "RecoveryWindowExpiredError",
    "PersistenceError",
    "DeliveryError",
]
