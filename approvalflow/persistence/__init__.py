"""Persistence layer for approval workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ApprovalflowConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .models import (
    ApprovalStep,
    HistoryAction,
    HistoryEntry,
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
)
from .repository import WorkflowStore
from .sqlite import SQLiteWorkflowStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowStore = None  # type: ignore

_store_instance: WorkflowStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[ApprovalflowConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``APPROVALFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("APPROVALFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteWorkflowStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresWorkflowStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "ApprovalStep",
    "HistoryAction",
    "HistoryEntry",
    "InstanceStatus",
    "StepStatus",
    "WorkflowInstance",
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "get_store",
]
