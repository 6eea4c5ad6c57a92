"""
Run-history store interface.

The run-history store is the single source of truth for skill and agent
runs. Every runtime treats it as append-then-finalize: a row is inserted
when a run starts and updated once when it settles. ``run_id`` is unique
and is the only isolation unit between concurrent writers.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunKind(str, Enum):
    SKILL = "skill"
    AGENT = "agent"


class RunStatus(str, Enum):
    """Status of a skill or agent run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass
class RunRecord:
    """
    One row of run history.

    ``target_id`` is the skill id for skill runs and the agent id for agent
    runs. ``output`` holds the serialized run result; for skill runs it
    carries the ``evidence`` bundle the state index and dispatcher read.
    """

    run_id: str
    workspace_id: str
    kind: RunKind
    target_id: str
    status: RunStatus = RunStatus.RUNNING

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    # Payload
    params: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    token_usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def evidence(self) -> dict[str, Any] | None:
        if not self.output:
            return None
        return self.output.get("evidence")

    def copy(self) -> RunRecord:
        """Deep copy, so callers never share mutable state with the store."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workspace_id": self.workspace_id,
            "kind": self.kind.value,
            "target_id": self.target_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "params": self.params,
            "output": self.output,
            "token_usage": self.token_usage,
            "error": self.error,
        }


class RunStore(ABC):
    """Abstract interface for run-history persistence.

    Implementations must tolerate concurrent writers on different run ids.
    Failures are raised as ``PersistenceError``; runtimes log and swallow them.
    """

    @abstractmethod
    async def insert_run(self, record: RunRecord) -> None:
        """Insert a new run.

        Raises:
            PersistenceError: If the run id already exists or the write failed
        """
        ...

    @abstractmethod
    async def update_run(self, record: RunRecord) -> None:
        """Finalize an existing run.

        Raises:
            PersistenceError: If the run does not exist or the write failed
        """
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> RunRecord | None:
        """Get a run by id."""
        ...

    @abstractmethod
    async def latest_run(self, workspace_id: str, skill_id: str) -> RunRecord | None:
        """Most recent completed run of one skill in a workspace."""
        ...

    @abstractmethod
    async def latest_runs_per_skill(self, workspace_id: str) -> dict[str, RunRecord]:
        """Most recent completed run of every skill in a workspace, in one query."""
        ...

    @abstractmethod
    async def runs_since(
        self,
        workspace_id: str,
        since: datetime,
        *,
        kind: RunKind | None = None,
        target_id: str | None = None,
    ) -> list[RunRecord]:
        """Runs started at or after ``since``, newest first."""
        ...

    async def close(self) -> None:
        """Release connections, if any."""


__all__ = ["RunKind", "RunStatus", "RunRecord", "RunStore"]
