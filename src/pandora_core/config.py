"""
Configuration system for pandora-core.

This module provides typed configuration classes with:
- Dataclass-based settings with validation
- Environment variable loading (with ``.env`` support)
- Dictionary loading validated against a JSON schema
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any, Literal

import jsonschema
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigurationError, ErrorCode

# =============================================================================
# Runtime Configuration
# =============================================================================


@dataclass
class RuntimeConfig:
    """Skill runtime limits."""

    max_parallel_steps: int = 4
    default_max_tool_calls: int = 10

    # Prompt guardrails, estimated at 4 characters per token
    max_prompt_tokens: int = 20000
    warn_prompt_tokens: int = 8000

    # Template value rendering
    max_list_items: int = 20
    max_json_chars: int = 8000

    def __post_init__(self):
        if self.max_parallel_steps < 1:
            raise ValueError("max_parallel_steps must be at least 1")
        if self.default_max_tool_calls < 0:
            raise ValueError("default_max_tool_calls cannot be negative")
        if self.warn_prompt_tokens > self.max_prompt_tokens:
            raise ValueError("warn_prompt_tokens cannot exceed max_prompt_tokens")


@dataclass
class AgentConfig:
    """Agent runtime defaults."""

    default_step_timeout: float = 300.0
    synthesis_slot_chars: int = 8000
    source_chars: int = 6000
    synthesis_max_tokens: int = 4000

    def __post_init__(self):
        if self.default_step_timeout <= 0:
            raise ValueError("default_step_timeout must be positive")
        if self.synthesis_slot_chars <= 0 or self.source_chars <= 0:
            raise ValueError("truncation sizes must be positive")


@dataclass
class StateIndexConfig:
    """Workspace state index caching."""

    ttl_seconds: float = 60.0
    default_staleness_hours: float = 24.0 * 7

    def __post_init__(self):
        if self.ttl_seconds < 0:
            raise ValueError("ttl_seconds cannot be negative")
        if self.default_staleness_hours <= 0:
            raise ValueError("default_staleness_hours must be positive")


@dataclass
class ModelConfig:
    """Model names per tier."""

    api_key: str | None = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    base_url: str | None = None
    classify_model: str = "gpt-4o-mini"
    synthesize_model: str = "gpt-4o"
    classify_temperature: float = 0.0
    synthesize_temperature: float = 0.7
    timeout: float = 120.0

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        for name in ("classify_temperature", "synthesize_temperature"):
            if not 0.0 <= getattr(self, name) <= 2.0:
                raise ValueError(f"{name} must be between 0 and 2")


@dataclass
class DeliveryConfig:
    """Delivery channel settings."""

    slack_webhook_url: str | None = field(default_factory=lambda: os.getenv("SLACK_WEBHOOK_URL"))
    max_message_chars: int = 3000
    max_retries: int = 3
    timeout: float = 10.0

    def __post_init__(self):
        if self.max_message_chars < 100:
            raise ValueError("max_message_chars must be at least 100")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


@dataclass
class DatabaseConfig:
    """Run-history store settings."""

    dsn: str | None = field(default_factory=lambda: os.getenv("DATABASE_URL"))
    skill_runs_table: str = "skill_runs"
    agent_runs_table: str = "agent_runs"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "runtime": {
            "type": "object",
            "properties": {
                "max_parallel_steps": {"type": "integer", "minimum": 1},
                "default_max_tool_calls": {"type": "integer", "minimum": 0},
                "max_prompt_tokens": {"type": "integer", "minimum": 1},
                "warn_prompt_tokens": {"type": "integer", "minimum": 1},
                "max_list_items": {"type": "integer", "minimum": 1},
                "max_json_chars": {"type": "integer", "minimum": 1},
            },
        },
        "agent": {
            "type": "object",
            "properties": {
                "default_step_timeout": {"type": "number", "exclusiveMinimum": 0},
                "synthesis_slot_chars": {"type": "integer", "minimum": 1},
                "source_chars": {"type": "integer", "minimum": 1},
                "synthesis_max_tokens": {"type": "integer", "minimum": 1},
            },
        },
        "state": {
            "type": "object",
            "properties": {
                "ttl_seconds": {"type": "number", "minimum": 0},
                "default_staleness_hours": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "model": {
            "type": "object",
            "properties": {
                "api_key": {"type": ["string", "null"]},
                "base_url": {"type": ["string", "null"]},
                "classify_model": {"type": "string"},
                "synthesize_model": {"type": "string"},
                "classify_temperature": {"type": "number"},
                "synthesize_temperature": {"type": "number"},
                "timeout": {"type": "number"},
            },
        },
        "delivery": {
            "type": "object",
            "properties": {
                "slack_webhook_url": {"type": ["string", "null"]},
                "max_message_chars": {"type": "integer"},
                "max_retries": {"type": "integer"},
                "timeout": {"type": "number"},
            },
        },
        "database": {
            "type": "object",
            "properties": {
                "dsn": {"type": ["string", "null"]},
                "skill_runs_table": {"type": "string"},
                "agent_runs_table": {"type": "string"},
            },
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR"]},
                "format": {"enum": ["json", "text"]},
            },
        },
    },
}


@dataclass
class Settings:
    """
    Master configuration for the orchestration core.

    Aggregates all configuration sections into a single object that can be
    loaded from environment variables, a dictionary, or built directly.
    """

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    state: StateIndexConfig = field(default_factory=StateIndexConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, prefix: str = "PANDORA_", *, dotenv: bool = True) -> Settings:
        """
        Load settings from environment variables.

        Example:
            PANDORA_MAX_PARALLEL_STEPS=8
            PANDORA_STATE_TTL_SECONDS=30
            PANDORA_SLACK_WEBHOOK_URL=https://hooks.slack.com/...
        """
        if dotenv:
            load_env()

        settings = cls()

        try:
            # Runtime
            if value := os.getenv(f"{prefix}MAX_PARALLEL_STEPS"):
                settings.runtime.max_parallel_steps = int(value)
            if value := os.getenv(f"{prefix}MAX_TOOL_CALLS"):
                settings.runtime.default_max_tool_calls = int(value)
            if value := os.getenv(f"{prefix}MAX_PROMPT_TOKENS"):
                settings.runtime.max_prompt_tokens = int(value)

            # Agent
            if value := os.getenv(f"{prefix}AGENT_STEP_TIMEOUT"):
                settings.agent.default_step_timeout = float(value)

            # State index
            if value := os.getenv(f"{prefix}STATE_TTL_SECONDS"):
                settings.state.ttl_seconds = float(value)
            if value := os.getenv(f"{prefix}DEFAULT_STALENESS_HOURS"):
                settings.state.default_staleness_hours = float(value)

            # Model
            if value := os.getenv(f"{prefix}OPENAI_API_KEY"):
                settings.model.api_key = value
            if value := os.getenv(f"{prefix}OPENAI_BASE_URL"):
                settings.model.base_url = value
            if value := os.getenv(f"{prefix}CLASSIFY_MODEL"):
                settings.model.classify_model = value
            if value := os.getenv(f"{prefix}SYNTHESIZE_MODEL"):
                settings.model.synthesize_model = value
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid numeric setting: {exc}", code=ErrorCode.INVALID_CONFIG, cause=exc
            ) from exc

        # Delivery
        if value := os.getenv(f"{prefix}SLACK_WEBHOOK_URL"):
            settings.delivery.slack_webhook_url = value

        # Database
        if value := os.getenv(f"{prefix}DATABASE_URL"):
            settings.database.dsn = value

        # Logging
        if value := os.getenv(f"{prefix}LOG_LEVEL"):
            settings.logging.level = value.upper()  # type: ignore
        if value := os.getenv(f"{prefix}LOG_FORMAT"):
            settings.logging.format = value.lower()  # type: ignore

        return settings

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """
        Create Settings from a dictionary.

        The dictionary is validated against ``CONFIG_SCHEMA`` first; each
        section is then rebuilt so ``__post_init__`` checks run.
        """
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}", code=ErrorCode.INVALID_CONFIG, cause=e
            ) from e

        sections = {
            "runtime": RuntimeConfig,
            "agent": AgentConfig,
            "state": StateIndexConfig,
            "model": ModelConfig,
            "delivery": DeliveryConfig,
            "database": DatabaseConfig,
            "logging": LoggingConfig,
        }
        kwargs: dict[str, Any] = {}
        try:
            for name, section_cls in sections.items():
                if name in data:
                    known = {f.name for f in dataclasses.fields(section_cls)}
                    kwargs[name] = section_cls(**{k: v for k, v in data[name].items() if k in known})
        except ValueError as e:
            raise ConfigurationError(str(e), code=ErrorCode.INVALID_CONFIG, cause=e) from e

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary."""
        return dataclasses.asdict(self)


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = [
    "RuntimeConfig",
    "AgentConfig",
    "StateIndexConfig",
    "ModelConfig",
    "DeliveryConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "CONFIG_SCHEMA",
    "Settings",
    "load_env",
]
