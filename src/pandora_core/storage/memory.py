"""
In-memory run store for tests and single-process deployments.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from ..errors import ErrorCode, PersistenceError
from .base import RunKind, RunRecord, RunStatus, RunStore


class InMemoryRunStore(RunStore):
    """In-memory implementation of RunStore.

    Records are copied on the way in and on the way out, so stored history
    cannot be mutated through a returned object.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()

    async def insert_run(self, record: RunRecord) -> None:
        async with self._lock:
            if record.run_id in self._runs:
                raise PersistenceError(f"Run {record.run_id} already exists", code=ErrorCode.DUPLICATE_RUN)
            self._runs[record.run_id] = record.copy()

    async def update_run(self, record: RunRecord) -> None:
        async with self._lock:
            if record.run_id not in self._runs:
                raise PersistenceError(f"Run {record.run_id} not found", code=ErrorCode.RUN_NOT_FOUND)
            self._runs[record.run_id] = record.copy()

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._lock:
            record = self._runs.get(run_id)
            return record.copy() if record else None

    def _completed_skill_runs(self, workspace_id: str) -> list[RunRecord]:
        return [
            r
            for r in self._runs.values()
            if r.workspace_id == workspace_id
            and r.kind is RunKind.SKILL
            and r.status is RunStatus.COMPLETED
            and r.completed_at is not None
        ]

    async def latest_run(self, workspace_id: str, skill_id: str) -> RunRecord | None:
        async with self._lock:
            runs = [r for r in self._completed_skill_runs(workspace_id) if r.target_id == skill_id]
            if not runs:
                return None
            return max(runs, key=lambda r: r.completed_at).copy()

    async def latest_runs_per_skill(self, workspace_id: str) -> dict[str, RunRecord]:
        async with self._lock:
            latest: dict[str, RunRecord] = {}
            for run in self._completed_skill_runs(workspace_id):
                current = latest.get(run.target_id)
                if current is None or run.completed_at > current.completed_at:
                    latest[run.target_id] = run
            return {skill_id: run.copy() for skill_id, run in latest.items()}

    async def runs_since(
        self,
        workspace_id: str,
        since: datetime,
        *,
        kind: RunKind | None = None,
        target_id: str | None = None,
    ) -> list[RunRecord]:
        async with self._lock:
            runs = [
                r
                for r in self._runs.values()
                if r.workspace_id == workspace_id
                and r.started_at is not None
                and r.started_at >= since
                and (kind is None or r.kind is kind)
                and (target_id is None or r.target_id == target_id)
            ]
            runs.sort(key=lambda r: r.started_at, reverse=True)
            return [r.copy() for r in runs]

    async def clear(self) -> None:
        async with self._lock:
            self._runs.clear()

    def __len__(self) -> int:
        return len(self._runs)


__all__ = ["InMemoryRunStore"]
