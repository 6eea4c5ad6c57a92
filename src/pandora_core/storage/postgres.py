"""
PostgreSQL run store.

Skill runs and agent runs live in separate tables with the same layout:
- run_id (TEXT PRIMARY KEY)
- workspace_id, target_id, status (TEXT)
- started_at, completed_at (TIMESTAMPTZ)
- duration_ms (INTEGER)
- params, output, token_usage (JSONB)
- error (TEXT)
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime
from typing import Any

import asyncpg

from ..errors import ErrorCode, PersistenceError
from .base import RunKind, RunRecord, RunStatus, RunStore

_COLUMNS = (
    "run_id",
    "workspace_id",
    "target_id",
    "status",
    "started_at",
    "completed_at",
    "duration_ms",
    "params",
    "output",
    "token_usage",
    "error",
)


def _sanitize_table_name(name: str) -> str:
    """Ensure the table name is safe for SQL interpolation."""
    if not name:
        raise ValueError("table_name cannot be empty")
    if not re.fullmatch(r"[a-zA-Z0-9_]+", name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class PostgresRunStore(RunStore):
    """PostgreSQL implementation of RunStore on an asyncpg pool."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        skill_table: str = "skill_runs",
        agent_table: str = "agent_runs",
    ):
        self._pool = pool
        self._tables = {
            RunKind.SKILL: _sanitize_table_name(skill_table),
            RunKind.AGENT: _sanitize_table_name(agent_table),
        }
        self._ensured = False
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls, dsn: str, **kwargs: Any) -> PostgresRunStore:
        pool = await asyncpg.create_pool(dsn)
        return cls(pool, **kwargs)

    async def _ensure_tables(self) -> None:
        """Create the run tables if they don't exist."""
        async with self._lock:
            if self._ensured:
                return
            async with self._pool.acquire() as conn:
                for table in self._tables.values():
                    ddl = f'''
                    CREATE TABLE IF NOT EXISTS "{table}" (
                        run_id TEXT PRIMARY KEY,
                        workspace_id TEXT NOT NULL,
                        target_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'running',
                        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        completed_at TIMESTAMPTZ,
                        duration_ms INTEGER,
                        params JSONB DEFAULT '{{}}'::jsonb,
                        output JSONB,
                        token_usage JSONB DEFAULT '{{}}'::jsonb,
                        error TEXT
                    );
                    CREATE INDEX IF NOT EXISTS "{table}_latest_idx"
                        ON "{table}" (workspace_id, target_id, status, completed_at DESC);
                    CREATE INDEX IF NOT EXISTS "{table}_started_idx" ON "{table}" (workspace_id, started_at)
                    '''
                    for stmt in [s.strip() for s in ddl.split(";") if s.strip()]:
                        await conn.execute(stmt)
            self._ensured = True

    def _record_to_row(self, record: RunRecord) -> dict[str, Any]:
        return {
            "run_id": record.run_id,
            "workspace_id": record.workspace_id,
            "target_id": record.target_id,
            "status": record.status.value,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
            "duration_ms": record.duration_ms,
            "params": json.dumps(record.params, default=str),
            "output": json.dumps(record.output, default=str) if record.output is not None else None,
            "token_usage": json.dumps(record.token_usage),
            "error": record.error,
        }

    def _row_to_record(self, row: Any, kind: RunKind) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            workspace_id=row["workspace_id"],
            kind=kind,
            target_id=row["target_id"],
            status=RunStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
            params=_load_json(row["params"], {}),
            output=_load_json(row["output"], None),
            token_usage=_load_json(row["token_usage"], {}),
            error=row["error"],
        )

    async def insert_run(self, record: RunRecord) -> None:
        await self._ensure_tables()
        row = self._record_to_row(record)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(_COLUMNS)))
        q = f'INSERT INTO "{self._tables[record.kind]}" ({", ".join(_COLUMNS)}) VALUES ({placeholders})'

        try:
            async with self._pool.acquire() as conn:
                await conn.execute(q, *(row[c] for c in _COLUMNS))
        except asyncpg.UniqueViolationError as e:
            raise PersistenceError(
                f"Run {record.run_id} already exists", code=ErrorCode.DUPLICATE_RUN, cause=e
            ) from e
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to insert run {record.run_id}: {e}", cause=e) from e

    async def update_run(self, record: RunRecord) -> None:
        await self._ensure_tables()
        row = self._record_to_row(record)
        update_cols = [c for c in _COLUMNS if c != "run_id"]
        set_clause = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(update_cols))
        q = f'UPDATE "{self._tables[record.kind]}" SET {set_clause} WHERE run_id = $1'

        try:
            async with self._pool.acquire() as conn:
                result = await conn.execute(q, record.run_id, *(row[c] for c in update_cols))
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to update run {record.run_id}: {e}", cause=e) from e
        if result == "UPDATE 0":
            raise PersistenceError(f"Run {record.run_id} not found", code=ErrorCode.RUN_NOT_FOUND)

    async def get_run(self, run_id: str) -> RunRecord | None:
        await self._ensure_tables()
        async with self._pool.acquire() as conn:
            for kind, table in self._tables.items():
                row = await conn.fetchrow(f'SELECT * FROM "{table}" WHERE run_id = $1', run_id)
                if row is not None:
                    return self._row_to_record(row, kind)
        return None

    async def latest_run(self, workspace_id: str, skill_id: str) -> RunRecord | None:
        await self._ensure_tables()
        q = f'''
        SELECT * FROM "{self._tables[RunKind.SKILL]}"
        WHERE workspace_id = $1 AND target_id = $2 AND status = 'completed'
        ORDER BY completed_at DESC LIMIT 1
        '''
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(q, workspace_id, skill_id)
        return self._row_to_record(row, RunKind.SKILL) if row else None

    async def latest_runs_per_skill(self, workspace_id: str) -> dict[str, RunRecord]:
        await self._ensure_tables()
        q = f'''
        SELECT DISTINCT ON (target_id) *
        FROM "{self._tables[RunKind.SKILL]}"
        WHERE workspace_id = $1 AND status = 'completed' AND completed_at IS NOT NULL
        ORDER BY target_id, completed_at DESC
        '''
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(q, workspace_id)
        return {row["target_id"]: self._row_to_record(row, RunKind.SKILL) for row in rows}

    async def runs_since(
        self,
        workspace_id: str,
        since: datetime,
        *,
        kind: RunKind | None = None,
        target_id: str | None = None,
    ) -> list[RunRecord]:
        await self._ensure_tables()
        kinds = [kind] if kind else list(self._tables)
        records: list[RunRecord] = []
        async with self._pool.acquire() as conn:
            for k in kinds:
                q = f'SELECT * FROM "{self._tables[k]}" WHERE workspace_id = $1 AND started_at >= $2'
                params: list[Any] = [workspace_id, since]
                if target_id:
                    q += " AND target_id = $3"
                    params.append(target_id)
                rows = await conn.fetch(q, *params)
                records.extend(self._row_to_record(row, k) for row in rows)
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records

    async def close(self) -> None:
        await self._pool.close()


__all__ = ["PostgresRunStore"]
