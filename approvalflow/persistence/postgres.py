"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .models import (
    ApprovalStep,
    HistoryEntry,
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
)
from .repository import WorkflowStore


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL.

    Conditional writes use ``UPDATE ... RETURNING`` inside a transaction so
    the guard and the dependent writes commit together.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                instance_id TEXT PRIMARY KEY,
                transaction_id TEXT NOT NULL,
                status TEXT NOT NULL,
                initiator_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                current_order INTEGER,
                rule_name TEXT,
                criteria JSONB NOT NULL,
                conditions JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_active_transaction
            ON workflow_instances (transaction_id)
            WHERE status = 'requested'
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_steps (
                instance_id TEXT NOT NULL REFERENCES workflow_instances (instance_id),
                step_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                role TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                acted_by TEXT,
                acted_at TIMESTAMPTZ,
                PRIMARY KEY (instance_id, step_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_history (
                id BIGSERIAL PRIMARY KEY,
                instance_id TEXT NOT NULL REFERENCES workflow_instances (instance_id),
                actor_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                step_id TEXT,
                comment TEXT
            )
            """
        )

    async def _insert_history(
        self, conn: asyncpg.Connection, instance_id: str, entry: HistoryEntry
    ) -> None:
        await conn.execute(
            "INSERT INTO workflow_history (instance_id, actor_id, action_type, timestamp, step_id, comment) VALUES ($1, $2, $3, $4, $5, $6)",
            instance_id,
            entry.actor_id,
            entry.action_type,
            entry.timestamp,
            entry.step_id,
            entry.comment,
        )

    async def _load(self, conn: asyncpg.Connection, row: Any) -> WorkflowInstance:
        step_rows = await conn.fetch(
            "SELECT step_id, role, step_order, status, acted_by, acted_at FROM approval_steps WHERE instance_id = $1 ORDER BY position",
            row["instance_id"],
        )
        history_rows = await conn.fetch(
            "SELECT id, actor_id, action_type, timestamp, step_id, comment FROM workflow_history WHERE instance_id = $1 ORDER BY id",
            row["instance_id"],
        )
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
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            steps=[
                ApprovalStep(
                    id=r["step_id"],
                    role=r["role"],
                    order=r["step_order"],
                    status=StepStatus(r["status"]),
                    acted_by=r["acted_by"],
                    acted_at=r["acted_at"],
                )
                for r in step_rows
            ],
            history=[
                HistoryEntry(
                    sequence=r["id"],
                    actor_id=r["actor_id"],
                    action_type=r["action_type"],
                    timestamp=r["timestamp"],
                    step_id=r["step_id"],
                    comment=r["comment"],
                )
                for r in history_rows
            ],
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO workflow_instances (instance_id, transaction_id, status, initiator_id, version, current_order, rule_name, criteria, conditions, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                    instance.instance_id,
                    instance.transaction_id,
                    instance.status.value,
                    instance.initiator_id,
                    instance.version,
                    instance.current_order,
                    instance.rule_name,
                    json.dumps(instance.criteria),
                    json.dumps(instance.conditions),
                    instance.created_at,
                    instance.updated_at,
                )
                await conn.executemany(
                    "INSERT INTO approval_steps (instance_id, step_id, position, role, step_order, status, acted_by, acted_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    [
                        (
                            instance.instance_id,
                            step.id,
                            position,
                            step.role,
                            step.order,
                            step.status.value,
                            step.acted_by,
                            step.acted_at,
                        )
                        for position, step in enumerate(instance.steps)
                    ],
                )
                for entry in instance.history:
                    await self._insert_history(conn, instance.instance_id, entry)
        except asyncpg.UniqueViolationError:
            return False
        finally:
            await conn.close()
        return True

    async def _claim_step(
        self,
        conn: asyncpg.Connection,
        instance_id: str,
        step_id: str,
        expected_status: StepStatus,
        new_status: StepStatus,
        acted_by: str,
        acted_at: datetime,
    ) -> bool:
        updated = await conn.fetchval(
            """
            UPDATE approval_steps
            SET status = $1, acted_by = $2, acted_at = $3
            WHERE instance_id = $4 AND step_id = $5 AND status = $6
              AND step_order = (
                SELECT current_order FROM workflow_instances
                WHERE instance_id = $4 AND status = $7
                FOR UPDATE
              )
            RETURNING step_id
            """,
            new_status.value,
            acted_by,
            acted_at,
            instance_id,
            step_id,
            expected_status.value,
            InstanceStatus.REQUESTED.value,
        )
        return updated is not None

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
        conn = await self._connect()
        try:
            async with conn.transaction():
                if not await self._claim_step(
                    conn, instance_id, step_id, expected_status, new_status, acted_by, acted_at
                ):
                    return False
                await conn.execute(
                    "UPDATE workflow_instances SET version = version + 1, updated_at = $1 WHERE instance_id = $2",
                    acted_at,
                    instance_id,
                )
                if history is not None:
                    await self._insert_history(conn, instance_id, history)
        finally:
            await conn.close()
        return True

    async def conditional_reject_step(
        self,
        instance_id: str,
        step_id: str,
        *,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if not await self._claim_step(
                    conn,
                    instance_id,
                    step_id,
                    StepStatus.PENDING,
                    StepStatus.REJECTED,
                    acted_by,
                    acted_at,
                ):
                    return False
                await conn.execute(
                    "UPDATE approval_steps SET status = $1, acted_by = $2, acted_at = $3 WHERE instance_id = $4 AND status = $5",
                    StepStatus.CANCELLED.value,
                    acted_by,
                    acted_at,
                    instance_id,
                    StepStatus.PENDING.value,
                )
                await conn.execute(
                    """
                    UPDATE workflow_instances
                    SET status = $1, current_order = NULL, version = version + 1, updated_at = $2
                    WHERE instance_id = $3
                    """,
                    InstanceStatus.REJECTED.value,
                    acted_at,
                    instance_id,
                )
                if history is not None:
                    await self._insert_history(conn, instance_id, history)
        finally:
            await conn.close()
        return True

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
        conn = await self._connect()
        try:
            async with conn.transaction():
                version = await conn.fetchval(
                    """
                    UPDATE workflow_instances
                    SET status = $1, current_order = $2, version = version + 1, updated_at = $3
                    WHERE instance_id = $4 AND version = $5 AND status = $6
                    RETURNING version
                    """,
                    status.value,
                    current_order,
                    updated_at,
                    instance_id,
                    expected_version,
                    InstanceStatus.REQUESTED.value,
                )
                if version is None:
                    return False
                if cancel_pending_by is not None:
                    await conn.execute(
                        "UPDATE approval_steps SET status = $1, acted_by = $2, acted_at = $3 WHERE instance_id = $4 AND status = $5",
                        StepStatus.CANCELLED.value,
                        cancel_pending_by,
                        updated_at,
                        instance_id,
                        StepStatus.PENDING.value,
                    )
                if history is not None:
                    await self._insert_history(conn, instance_id, history)
        finally:
            await conn.close()
        return True

    async def append_history(self, instance_id: str, entry: HistoryEntry) -> bool:
        conn = await self._connect()
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM workflow_instances WHERE instance_id = $1", instance_id
            )
            if exists is None:
                return False
            await self._insert_history(conn, instance_id, entry)
        finally:
            await conn.close()
        return True

    async def read_snapshot(self, transaction_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                row = await conn.fetchrow(
                    """
                    SELECT * FROM workflow_instances WHERE transaction_id = $1
                    ORDER BY (status = 'requested') DESC, created_at DESC
                    LIMIT 1
                    """,
                    transaction_id,
                )
                if not row:
                    return None
                return await self._load(conn, row)
        finally:
            await conn.close()

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                row = await conn.fetchrow(
                    "SELECT * FROM workflow_instances WHERE instance_id = $1", instance_id
                )
                if not row:
                    return None
                return await self._load(conn, row)
        finally:
            await conn.close()

    async def list_instances(
        self,
        transaction_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                rows = await conn.fetch(
                    """
                    SELECT * FROM workflow_instances
                    WHERE ($1::text IS NULL OR transaction_id = $1)
                      AND ($2::text IS NULL OR status = $2)
                    ORDER BY created_at
                    """,
                    transaction_id,
                    status.value if status is not None else None,
                )
                return [await self._load(conn, row) for row in rows]
        finally:
            await conn.close()
