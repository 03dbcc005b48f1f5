"""Store abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import HistoryEntry, InstanceStatus, StepStatus, WorkflowInstance


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends.

    Every mutating operation is atomic and reports whether it was applied.
    The orchestrator relies on these conditional writes for all
    serialization between concurrent callers.
    """

    async def create_instance(self, instance: WorkflowInstance) -> bool:
        """Insert ``instance`` with its steps and history.

        Returns ``False`` when a requested instance already exists for the
        same transaction.
        """

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
        """Move a step out of ``expected_status``.

        Applies only while the instance is requested and the step belongs to
        the instance's current order. Bumps the instance version and appends
        ``history`` in the same unit.
        """

    async def conditional_reject_step(
        self,
        instance_id: str,
        step_id: str,
        *,
        acted_by: str,
        acted_at: datetime,
        history: Optional[HistoryEntry] = None,
    ) -> bool:
        """Reject a pending step and the whole instance in one unit.

        Same guard as ``conditional_update_step``. Every other pending step
        is cancelled with ``acted_by``, the instance becomes rejected with no
        current order, the version is bumped and ``history`` appended.
        """

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
        """Compare-and-swap the instance status and current order on ``version``.

        When ``cancel_pending_by`` is set every pending step is cancelled in
        the same unit.
        """

    async def append_history(self, instance_id: str, entry: HistoryEntry) -> bool:
        """Append an audit entry to the instance."""

    async def read_snapshot(self, transaction_id: str) -> WorkflowInstance | None:
        """Return the requested instance for the transaction, else the latest one."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(
        self,
        transaction_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        """Return persisted instances, oldest first."""
