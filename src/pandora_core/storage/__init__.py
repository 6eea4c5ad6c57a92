"""
Run-history persistence.
"""

from .base import RunKind, RunRecord, RunStatus, RunStore
from .memory import InMemoryRunStore
from .postgres import PostgresRunStore

__all__ = [
    "RunKind",
    "RunStatus",
    "RunRecord",
    "RunStore",
    "InMemoryRunStore",
    "PostgresRunStore",
]
