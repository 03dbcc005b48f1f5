"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import (
    ApprovalStep,
    HistoryEntry,
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
)
from .repository import WorkflowStore


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite.

    Conditional writes are single transactions guarded by their ``WHERE``
    clause; a partial unique index keeps one requested instance per
    transaction.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_instances (
                    instance_id TEXT PRIMARY KEY,
                    transaction_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    initiator_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    current_order INTEGER,
                    rule_name TEXT,
                    criteria TEXT NOT NULL,
                    conditions TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_active_transaction
                ON workflow_instances (transaction_id)
                WHERE status = 'requested'
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS approval_steps (
                    instance_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    step_order INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    acted_by TEXT,
                    acted_at TEXT,
                    PRIMARY KEY (instance_id, step_id)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instance_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    step_id TEXT,
                    comment TEXT
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _read_one(self, query: str, *params: Any) -> WorkflowInstance | None:
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
            return self._load(row) if row else None

    def _read_all(self, query: str, *params: Any) -> list[WorkflowInstance]:
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
            return [self._load(row) for row in rows]

    def _insert_history(self, instance_id: str, entry: HistoryEntry) -> None:
        self._conn.execute(
            "INSERT INTO workflow_history (instance_id, actor_id, action_type, timestamp, step_id, comment) VALUES (?, ?, ?, ?, ?, ?)",
            (
                instance_id,
                entry.actor_id,
                entry.action_type,
                _ts(entry.timestamp),
                entry.step_id,
                entry.comment,
            ),
        )

    def _create(self, instance: WorkflowInstance) -> bool:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO workflow_instances (instance_id, transaction_id, status, initiator_id, version, current_order, rule_name, criteria, conditions, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            instance.instance_id,
                            instance.transaction_id,
                            instance.status.value,
                            instance.initiator_id,
                            instance.version,
                            instance.current_order,
                            instance.rule_name,
                            json.dumps(instance.criteria),
                            json.dumps(instance.conditions),
                            _ts(instance.created_at),
                            _ts(instance.updated_at),
                        ),
                    )
                    self._conn.executemany(
                        "INSERT INTO approval_steps (instance_id, step_id, position, role, step_order, status, acted_by, acted_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        [
                            (
                                instance.instance_id,
                                step.id,
                                position,
                                step.role,
                                step.order,
                                step.status.value,
                                step.acted_by,
                                _ts(step.acted_at),
                            )
                            for position, step in enumerate(instance.steps)
                        ],
                    )
                    for entry in instance.history:
                        self._insert_history(instance.instance_id, entry)
            except sqlite3.IntegrityError:
                return False
        return True

    def _claim_step(
        self,
        instance_id: str,
        step_id: str,
        expected_status: StepStatus,
        new_status: StepStatus,
        acted_by: str,
        acted_at: datetime,
    ) -> bool:
        cur = self._conn.execute(
            """
            UPDATE approval_steps
            SET status = ?, acted_by = ?, acted_at = ?
            WHERE instance_id = ? AND step_id = ? AND status = ?
              AND step_order = (
                SELECT current_order FROM workflow_instances
                WHERE instance_id = ? AND status = ?
              )
            """,
            (
                new_status.value,
                acted_by,
                _ts(acted_at),
                instance_id,
                step_id,
                expected_status.value,
                instance_id,
                InstanceStatus.REQUESTED.value,
            ),
        )
        return cur.rowcount == 1

    def _update_step(
        self,
        instance_id: str,
        step_id: str,
        expected_status: StepStatus,
        new_status: StepStatus,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry],
    ) -> bool:
        with self._lock, self._conn:
            if not self._claim_step(
                instance_id, step_id, expected_status, new_status, acted_by, acted_at
            ):
                return False
            self._conn.execute(
                "UPDATE workflow_instances SET version = version + 1, updated_at = ? WHERE instance_id = ?",
                (_ts(acted_at), instance_id),
            )
            if history is not None:
                self._insert_history(instance_id, history)
            return True

    def _reject_step(
        self,
        instance_id: str,
        step_id: str,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry],
    ) -> bool:
        with self._lock, self._conn:
            if not self._claim_step(
                instance_id,
                step_id,
                StepStatus.PENDING,
                StepStatus.REJECTED,
                acted_by,
                acted_at,
            ):
                return False
            self._conn.execute(
                "UPDATE approval_steps SET status = ?, acted_by = ?, acted_at = ? WHERE instance_id = ? AND status = ?",
                (
                    StepStatus.CANCELLED.value,
                    acted_by,
                    _ts(acted_at),
                    instance_id,
                    StepStatus.PENDING.value,
                ),
            )
            self._conn.execute(
                """
                UPDATE workflow_instances
                SET status = ?, current_order = NULL, version = version + 1, updated_at = ?
                WHERE instance_id = ?
                """,
                (InstanceStatus.REJECTED.value, _ts(acted_at), instance_id),
            )
            if history is not None:
                self._insert_history(instance_id, history)
            return True

    def _advance(
        self,
        instance_id: str,
        expected_version: int,
        status: InstanceStatus,
        current_order: Optional[int],
        updated_at: datetime,
        cancel_pending_by: Optional[str],
        history: Optional[HistoryEntry],
    ) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE workflow_instances
                SET status = ?, current_order = ?, version = version + 1, updated_at = ?
                WHERE instance_id = ? AND version = ? AND status = ?
                """,
                (
                    status.value,
                    current_order,
                    _ts(updated_at),
                    instance_id,
                    expected_version,
                    InstanceStatus.REQUESTED.value,
                ),
            )
            if cur.rowcount != 1:
                return False
            if cancel_pending_by is not None:
                self._conn.execute(
                    "UPDATE approval_steps SET status = ?, acted_by = ?, acted_at = ? WHERE instance_id = ? AND status = ?",
                    (
                        StepStatus.CANCELLED.value,
                        cancel_pending_by,
                        _ts(updated_at),
                        instance_id,
                        StepStatus.PENDING.value,
                    ),
                )
            if history is not None:
                self._insert_history(instance_id, history)
            return True

    def _append(self, instance_id: str, entry: HistoryEntry) -> bool:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT 1 FROM workflow_instances WHERE instance_id = ?", (instance_id,)
            ).fetchone()
            if row is None:
                return False
            self._insert_history(instance_id, entry)
            return True

    def _load(self, row: sqlite3.Row) -> WorkflowInstance:
        step_rows = self._conn.execute(
            "SELECT step_id, role, step_order, status, acted_by, acted_at FROM approval_steps WHERE instance_id = ? ORDER BY position",
            (row["instance_id"],),
        ).fetchall()
        history_rows = self._conn.execute(
            "SELECT id, actor_id, action_type, timestamp, step_id, comment FROM workflow_history WHERE instance_id = ? ORDER BY id",
            (row["instance_id"],),
        ).fetchall()
        return WorkflowInstance(
            instance_id=row["instance_id"],
            transaction_id=row["transaction_id"],
            status=InstanceStatus(row["status"]),
            initiator_id=row["initiator_id"],
            version=row["version"],
            current_order=row["current_order"],
            rule_name=row["rule_name"],
            criteria=json.loads(row["criteria"]),
            conditions=json.loads(row["conditions"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            steps=[
                ApprovalStep(
                    id=r["step_id"],
                    role=r["role"],
                    order=r["step_order"],
                    status=StepStatus(r["status"]),
                    acted_by=r["acted_by"],
                    acted_at=_parse_ts(r["acted_at"]),
                )
                for r in step_rows
            ],
            history=[
                HistoryEntry(
                    sequence=r["id"],
                    actor_id=r["actor_id"],
                    action_type=r["action_type"],
                    timestamp=_parse_ts(r["timestamp"]),
                    step_id=r["step_id"],
                    comment=r["comment"],
                )
                for r in history_rows
            ],
        )

    # ------------------------------------------------------------------
    # Store API
    async def create_instance(self, instance: WorkflowInstance) -> bool:
        return await asyncio.to_thread(self._create, instance)

    async def conditional_update_step(
        self,
        instance_id: str,
        step_id: str,
        *,
        expected_status: StepStatus,
        new_status: StepStatus,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._update_step,
            instance_id,
            step_id,
            expected_status,
            new_status,
            acted_by,
            acted_at,
            history,
        )

    async def conditional_reject_step(
        self,
        instance_id: str,
        step_id: str,
        *,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._reject_step, instance_id, step_id, acted_by, acted_at, history
        )

    async def conditional_advance_instance(
        self,
        instance_id: str,
        expected_version: int,
        *,
        status: InstanceStatus,
        current_order: Optional[int],
        updated_at: datetime,
        cancel_pending_by: Optional[str] = None,
        history: Optional[HistoryEntry] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._advance,
            instance_id,
            expected_version,
            status,
            current_order,
            updated_at,
            cancel_pending_by,
            history,
        )

    async def append_history(self, instance_id: str, entry: HistoryEntry) -> bool:
        return await asyncio.to_thread(self._append, instance_id, entry)

    async def read_snapshot(self, transaction_id: str) -> WorkflowInstance | None:
        return await asyncio.to_thread(
            self._read_one,
            """
            SELECT * FROM workflow_instances WHERE transaction_id = ?
            ORDER BY (status = 'requested') DESC, created_at DESC, rowid DESC
            LIMIT 1
            """,
            transaction_id,
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await asyncio.to_thread(
            self._read_one,
            "SELECT * FROM workflow_instances WHERE instance_id = ?",
            instance_id,
        )

    async def list_instances(
        self,
        transaction_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        query = "SELECT * FROM workflow_instances WHERE 1 = 1"
        params: list[Any] = []
        if transaction_id is not None:
            query += " AND transaction_id = ?"
            params.append(transaction_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at, rowid"
        return await asyncio.to_thread(self._read_all, query, *params)
