"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.REQUESTED


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class HistoryAction:
    """Action types recorded by the orchestrator.

    Hooks may append entries with their own action types.
    """

    INITIATED = "initiated"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FINALIZED = "finalized"


class ApprovalStep(BaseModel):
    """One required approver action within a workflow instance."""

    id: str
    role: str
    order: int
    status: StepStatus = StepStatus.PENDING
    acted_by: Optional[str] = None
    acted_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    """Append-only audit record."""

    sequence: Optional[int] = None
    actor_id: str
    action_type: str
    timestamp: datetime = Field(default_factory=utcnow)
    step_id: Optional[str] = None
    comment: Optional[str] = None


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str
    status: InstanceStatus = InstanceStatus.REQUESTED
    initiator_id: str
    version: int = 1
    current_order: Optional[int] = None
    rule_name: Optional[str] = None
    criteria: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] = Field(default_factory=dict)
    steps: list[ApprovalStep] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: str) -> ApprovalStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def pending_steps(self, order: Optional[int] = None) -> list[ApprovalStep]:
        return [
            s
            for s in self.steps
            if s.status == StepStatus.PENDING and (order is None or s.order == order)
        ]

    def next_pending_order(self) -> Optional[int]:
        """Lowest order among pending steps, ``None`` when nothing is pending."""
        orders = [s.order for s in self.pending_steps()]
        return min(orders) if orders else None
