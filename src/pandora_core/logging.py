"""
Structured logging for pandora-core.

This module provides:
- Run and step log records emitted as JSON at run and step boundaries
- A task-local log context (``bind_log_context``) so records logged deep
  inside a run carry its run, workspace and skill ids
- JSON and text formatters that surface those fields
- Timing helpers used by the runtimes to measure durations
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

# Fields surfaced by the formatters, from ``extra=`` or the bound context.
CONTEXT_FIELDS = (
    "run_id",
    "workspace_id",
    "skill_id",
    "agent_id",
    "step_id",
    "event_type",
    "duration_ms",
)

_log_context: ContextVar[dict[str, Any]] = ContextVar("pandora_log_context", default={})


# =============================================================================
# Log Context
# =============================================================================


def get_log_context() -> dict[str, Any]:
    """Fields bound in the current task."""
    return dict(_log_context.get())


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Bind log fields for the duration of the block.

    Bindings nest: inner values win and the outer context is restored on
    exit. Each asyncio task sees its own copy, so concurrent runs never
    mix ids.
    """
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


class LogContextFilter(logging.Filter):
    """Copies bound context fields onto records that do not already set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


# =============================================================================
# Log Record Types
# =============================================================================


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunLog:
    """A skill or agent run starting or settling."""

    run_id: str
    workspace_id: str
    kind: str  # "skill" | "agent"
    target_id: str
    status: str

    timestamp: str = field(default_factory=_utc_timestamp)
    duration_ms: float | None = None
    total_tokens: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class StepLog:
    """A single step settling."""

    run_id: str
    step_id: str
    tier: str
    status: str

    timestamp: str = field(default_factory=_utc_timestamp)
    duration_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger:
    """
    Emits run and step boundary events as JSON (or text) lines.

    Example:
        ```python
        log = get_logger()
        with bind_log_context(workspace_id="ws_1"):
            log.log_run(RunLog(run_id, "ws_1", "skill", "pipeline-hygiene", "running"))
        ```
    """

    def __init__(
        self,
        name: str = "pandora_core.runs",
        level: str = "INFO",
        json_output: bool = True,
    ):
        self.name = name
        self.json_output = json_output

        self._logger = logging.getLogger(name)
        self._logger.setLevel(getattr(logging, level.upper()))

        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
            handler.addFilter(LogContextFilter())
            self._logger.addHandler(handler)
            self._logger.propagate = False

    def _emit(self, level: int, message: str, event_type: str, data: dict[str, Any]) -> None:
        payload = {"message": message, "event_type": event_type, **get_log_context(), **data}
        if self.json_output:
            self._logger.log(level, json.dumps(payload, default=str))
        else:
            fields = " ".join(f"{k}={v}" for k, v in payload.items() if k not in ("message", "timestamp"))
            self._logger.log(level, f"{message} {fields}")

    def log_run(self, run: RunLog) -> None:
        """Log a run starting or settling. Failed runs log at WARNING."""
        level = logging.WARNING if run.status == "failed" else logging.INFO
        message = f"{run.kind} run {run.target_id} {run.status}"
        if run.duration_ms:
            message += f" ({run.duration_ms:.0f}ms)"
        self._emit(level, message, "run", run.to_dict())

    def log_step(self, step: StepLog) -> None:
        """Log a step settling. Failed steps log at WARNING, the rest at DEBUG."""
        level = logging.WARNING if step.status == "failed" else logging.DEBUG
        self._emit(level, f"Step '{step.step_id}' {step.status}", "step", step.to_dict())


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per record. JSON messages are merged, not nested."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
        }

        message = record.getMessage()
        try:
            message_data = json.loads(message)
        except (json.JSONDecodeError, TypeError):
            message_data = None
        if isinstance(message_data, dict):
            log_data.update(message_data)
        else:
            log_data["message"] = message

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data.setdefault(key, value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        fields = " ".join(
            f"{key}={getattr(record, key)}" for key in CONTEXT_FIELDS if getattr(record, key, None) is not None
        )
        line = f"{timestamp} {record.levelname:8} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# =============================================================================
# Utilities
# =============================================================================


def generate_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


def truncate_for_log(text: str, max_length: int = 200) -> str:
    """Truncate text for logging."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"... ({len(text)} chars total)"


@dataclass
class Timer:
    """Wall-clock timer in milliseconds."""

    start_time: float = field(default_factory=time.perf_counter)
    end_time: float | None = None

    def stop(self) -> float:
        self.end_time = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000


@contextmanager
def timed() -> Iterator[Timer]:
    """Time the block; ``elapsed_ms`` keeps updating until it exits."""
    timer = Timer()
    try:
        yield timer
    finally:
        timer.stop()


# =============================================================================
# Global Logger
# =============================================================================

_default_logger: StructuredLogger | None = None


def get_logger() -> StructuredLogger:
    """The shared run/step event logger."""
    global _default_logger
    if _default_logger is None:
        _default_logger = StructuredLogger()
    return _default_logger


def configure_logging(level: str = "INFO", fmt: str = "json") -> StructuredLogger:
    """
    Configure the ``pandora_core`` logger tree.

    ``fmt`` is ``"json"`` or ``"text"``. Handlers installed by an earlier
    call are replaced, so repeated calls do not duplicate output.
    """
    global _default_logger
    formatter: logging.Formatter = JSONFormatter() if fmt == "json" else TextFormatter()

    package = logging.getLogger("pandora_core")
    package.setLevel(getattr(logging, level.upper()))
    for handler in list(package.handlers):
        package.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(LogContextFilter())
    package.addHandler(handler)

    runs = logging.getLogger("pandora_core.runs")
    for old in list(runs.handlers):
        runs.removeHandler(old)
    _default_logger = StructuredLogger(level=level, json_output=fmt == "json")
    return _default_logger


__all__ = [
    # Context
    "bind_log_context",
    "get_log_context",
    "LogContextFilter",
    # Log records
    "RunLog",
    "StepLog",
    # Logger
    "StructuredLogger",
    # Formatters
    "JSONFormatter",
    "TextFormatter",
    # Timing
    "Timer",
    "timed",
    # Utilities
    "generate_run_id",
    "truncate_for_log",
    # Global
    "get_logger",
    "configure_logging",
]
