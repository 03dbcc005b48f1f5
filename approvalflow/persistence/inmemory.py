"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from .models import (
    HistoryEntry,
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
)
from .repository import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Reads hand out copies so callers can
    never mutate stored state directly.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0

    def _append(self, instance: WorkflowInstance, entry: HistoryEntry) -> None:
        self._sequence += 1
        instance.history.append(entry.model_copy(update={"sequence": self._sequence}))

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> bool:
        async with self._lock:
            for existing in self._instances.values():
                if (
                    existing.transaction_id == instance.transaction_id
                    and existing.status == InstanceStatus.REQUESTED
                ):
                    return False
            stored = instance.model_copy(deep=True, update={"history": []})
            for entry in instance.history:
                self._append(stored, entry)
            self._instances[stored.instance_id] = stored
            return True

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
        async with self._lock:
            wf = self._claim_step(instance_id, step_id, expected_status)
            if wf is None:
                return False
            step = wf.get_step(step_id)
            step.status = new_status
            step.acted_by = acted_by
            step.acted_at = acted_at
            wf.version += 1
            wf.updated_at = acted_at
            if history is not None:
                self._append(wf, history)
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
        async with self._lock:
            wf = self._claim_step(instance_id, step_id, StepStatus.PENDING)
            if wf is None:
                return False
            for step in wf.pending_steps():
                step.status = (
                    StepStatus.REJECTED if step.id == step_id else StepStatus.CANCELLED
                )
                step.acted_by = acted_by
                step.acted_at = acted_at
            wf.status = InstanceStatus.REJECTED
            wf.current_order = None
            wf.version += 1
            wf.updated_at = acted_at
            if history is not None:
                self._append(wf, history)
            return True

    def _claim_step(
        self, instance_id: str, step_id: str, expected_status: StepStatus
    ) -> WorkflowInstance | None:
        wf = self._instances.get(instance_id)
        if wf is None or wf.status != InstanceStatus.REQUESTED:
            return None
        step = wf.get_step(step_id)
        if (
            step is None
            or step.status != expected_status
            or step.order != wf.current_order
        ):
            return None
        return wf

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
        async with self._lock:
            wf = self._instances.get(instance_id)
            if (
                wf is None
                or wf.version != expected_version
                or wf.status != InstanceStatus.REQUESTED
            ):
                return False
            if cancel_pending_by is not None:
                for step in wf.pending_steps():
                    step.status = StepStatus.CANCELLED
                    step.acted_by = cancel_pending_by
                    step.acted_at = updated_at
            wf.status = status
            wf.current_order = current_order
            wf.version += 1
            wf.updated_at = updated_at
            if history is not None:
                self._append(wf, history)
            return True

    async def append_history(self, instance_id: str, entry: HistoryEntry) -> bool:
        async with self._lock:
            wf = self._instances.get(instance_id)
            if wf is None:
                return False
            self._append(wf, entry)
            return True

    async def read_snapshot(self, transaction_id: str) -> WorkflowInstance | None:
        async with self._lock:
            candidates = [
                wf
                for wf in self._instances.values()
                if wf.transaction_id == transaction_id
            ]
            if not candidates:
                return None
            active = [c for c in candidates if c.status == InstanceStatus.REQUESTED]
            # dicts keep insertion order, so the last candidate is the newest
            chosen = active[0] if active else candidates[-1]
            return chosen.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self._lock:
            wf = self._instances.get(instance_id)
            return wf.model_copy(deep=True) if wf else None

    async def list_instances(
        self,
        transaction_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        async with self._lock:
            return [
                wf.model_copy(deep=True)
                for wf in self._instances.values()
                if (transaction_id is None or wf.transaction_id == transaction_id)
                and (status is None or wf.status == status)
            ]
