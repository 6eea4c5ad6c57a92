"""
Error taxonomy for pandora-core.

This module provides a hierarchical exception system with:
- Error codes for programmatic handling
- Retryable vs non-retryable classification
- Structured context for debugging (run, workspace, skill, step)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Standardized error codes for the orchestration core."""

    # Configuration errors (1xxx)
    CONFIG_ERROR = "ERR_1000"
    UNKNOWN_SKILL = "ERR_1001"
    UNKNOWN_AGENT = "ERR_1002"
    INVALID_GRAPH = "ERR_1003"
    UNKNOWN_TOOL = "ERR_1004"
    INVALID_CONFIG = "ERR_1005"

    # Step errors (2xxx)
    STEP_ERROR = "ERR_2000"
    STEP_TIMEOUT = "ERR_2001"
    SCHEMA_VALIDATION = "ERR_2002"
    TEMPLATE_RENDER = "ERR_2003"
    PROMPT_TOO_LARGE = "ERR_2004"
    MODEL_ERROR = "ERR_2005"

    # Agent errors (3xxx)
    AGENT_ERROR = "ERR_3000"
    LIFECYCLE_ERROR = "ERR_3001"
    RECOVERY_EXPIRED = "ERR_3002"

    # Persistence errors (4xxx)
    PERSISTENCE_ERROR = "ERR_4000"
    DUPLICATE_RUN = "ERR_4001"
    RUN_NOT_FOUND = "ERR_4002"

    # Delivery errors (5xxx)
    DELIVERY_ERROR = "ERR_5000"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "ERR_9000"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    run_id: str | None = None
    workspace_id: str | None = None
    skill_id: str | None = None
    agent_id: str | None = None
    step_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workspace_id": self.workspace_id,
            "skill_id": self.skill_id,
            "agent_id": self.agent_id,
            "step_id": self.step_id,
            **self.extra,
        }


class PandoraError(Exception):
    """
    Base exception for all orchestration core errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the operation can be retried
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.run_id:
            parts.append(f"(run_id={self.context.run_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PandoraError):
    """Unknown identifiers, malformed step graphs, invalid settings. Never retried."""

    code = ErrorCode.CONFIG_ERROR
    retryable = False


# =============================================================================
# Step Errors
# =============================================================================


class StepExecutionError(PandoraError):
    """A tool raised, a model call failed, or a response failed validation."""

    code = ErrorCode.STEP_ERROR
    retryable = False

    def __init__(self, message: str, *, step_id: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        if step_id is not None:
            self.context.step_id = step_id
        self.step_id = self.context.step_id


class StepTimeoutError(StepExecutionError):
    """A step or skill did not settle before its deadline."""

    code = ErrorCode.STEP_TIMEOUT
    retryable = True

    def __init__(self, message: str, *, timeout_seconds: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class SchemaValidationError(StepExecutionError):
    """A classify response did not match its declared output schema."""

    code = ErrorCode.SCHEMA_VALIDATION

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class TemplateRenderError(StepExecutionError):
    """A prompt template referenced a slot that was not supplied."""

    code = ErrorCode.TEMPLATE_RENDER


# =============================================================================
# Agent Errors
# =============================================================================


class AgentExecutionError(PandoraError):
    """A required agent step failed; the agent run was aborted."""

    code = ErrorCode.AGENT_ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        step_id: str | None = None,
        result: Any = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.result = result


class LifecycleError(PandoraError):
    """Invalid agent definition state transition."""

    code = ErrorCode.LIFECYCLE_ERROR


class RecoveryWindowExpiredError(LifecycleError):
    """An archived definition can no longer be recovered."""

    code = ErrorCode.RECOVERY_EXPIRED

    def __init__(self, message: str, *, recoverable_until: datetime | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.recoverable_until = recoverable_until


# =============================================================================
# Persistence / Delivery Errors
# =============================================================================


class PersistenceError(PandoraError):
    """The run-history store failed. Logged by runtimes, never propagated."""

    code = ErrorCode.PERSISTENCE_ERROR
    retryable = True


class DeliveryError(PandoraError):
    """A delivery channel rejected or failed to send a message."""

    code = ErrorCode.DELIVERY_ERROR
    retryable = True

    def __init__(self, message: str, *, http_status: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.http_status = http_status


def describe_error(error: BaseException) -> str:
    """Render an exception as the message stored in step and run records."""
    if isinstance(error, PandoraError):
        return error.message
    text = str(error)
    return text or error.__class__.__name__


def is_retryable(error: BaseException) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if the error is retryable
    """
    if isinstance(error, PandoraError):
        return error.retryable

    retryable_types = (
        asyncio.TimeoutError,
        ConnectionError,
        TimeoutError,
    )
    return isinstance(error, retryable_types)


async def surface_inner_timeouts(awaitable: Awaitable[T], *, step_id: str | None = None) -> T:
    """
    Await ``awaitable``, re-raising any ``TimeoutError`` it raises as a
    ``StepExecutionError``.

    Wrap work passed to ``asyncio.wait_for`` with this so an
    ``asyncio.TimeoutError`` caught outside always means the caller's own
    deadline fired, never a tool or client timing out underneath.
    """
    try:
        return await awaitable
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise StepExecutionError(
            f"{type(e).__name__}: {str(e) or 'timed out'}",
            step_id=step_id,
            retryable=True,
            cause=e,
        ) from e


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "PandoraError",
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
    "describe_error",
    "is_retryable",
    "surface_inner_timeouts",
]
