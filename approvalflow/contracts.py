"""Caller-facing contracts for the approval workflow engine."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import HookFailure
from .persistence.models import (
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
    utcnow,
)


class TransactionCriteria(BaseModel):
    """Transaction attributes used to resolve the approval configuration."""

    model_config = ConfigDict(extra="allow")

    transaction_type: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    facility: Optional[str] = None
    currency: Optional[str] = None
    business_model: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a three letter ISO code")
        return value


class StepTemplate(BaseModel):
    """Defines one required approval in a workflow configuration."""

    role: str = Field(min_length=1)
    order: Optional[int] = Field(default=None, ge=1)
    is_parallel: bool = False


class WorkflowConfig(BaseModel):
    """Resolved approval configuration for a transaction."""

    steps: List[StepTemplate] = Field(default_factory=list)
    conditions: Dict[str, Any] = Field(default_factory=dict)
    rule_name: Optional[str] = None

    @model_validator(mode="after")
    def _assign_orders(self) -> "WorkflowConfig":
        resolved: List[StepTemplate] = []
        previous: Optional[int] = None
        for template in self.steps:
            order = template.order
            if order is None:
                if previous is None:
                    order = 1
                elif template.is_parallel:
                    order = previous
                else:
                    order = previous + 1
                template = template.model_copy(update={"order": order})
            resolved.append(template)
            previous = order
        self.steps = resolved
        return self

    @property
    def orders(self) -> List[int]:
        return sorted({t.order for t in self.steps})


class Actor(BaseModel):
    """Identity and capability set of whoever acts on a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    roles: frozenset[str] = Field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles


class ActionType(str, Enum):
    INITIATE = "initiate"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    RECONCILE = "reconcile"

    @property
    def step_status(self) -> Optional[StepStatus]:
        """Status a step reaches through this action, if any."""
        return {
            ActionType.APPROVE: StepStatus.APPROVED,
            ActionType.REJECT: StepStatus.REJECTED,
        }.get(self)


class ActionRequest(BaseModel):
    """The triggering action handed to hooks."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    actor_id: str
    action: ActionType
    step_id: Optional[str] = None
    comment: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StepView(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: str
    order: int
    status: StepStatus
    acted_by: Optional[str] = None
    acted_at: Optional[datetime] = None


class HistoryView(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: Optional[int] = None
    actor_id: str
    action_type: str
    timestamp: datetime
    step_id: Optional[str] = None
    comment: Optional[str] = None


class WorkflowSnapshot(BaseModel):
    """Immutable read model of a workflow instance."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    transaction_id: str
    status: InstanceStatus
    initiator_id: str
    version: int
    current_order: Optional[int] = None
    rule_name: Optional[str] = None
    conditions: Dict[str, Any] = Field(default_factory=dict)
    steps: Tuple[StepView, ...] = ()
    history: Tuple[HistoryView, ...] = ()
    can_act_roles: Tuple[str, ...] = ()

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "WorkflowSnapshot":
        can_act: Tuple[str, ...] = ()
        if not instance.status.is_terminal and instance.current_order is not None:
            can_act = tuple(
                sorted({s.role for s in instance.pending_steps(instance.current_order)})
            )
        return cls(
            instance_id=instance.instance_id,
            transaction_id=instance.transaction_id,
            status=instance.status,
            initiator_id=instance.initiator_id,
            version=instance.version,
            current_order=instance.current_order,
            rule_name=instance.rule_name,
            conditions=dict(instance.conditions),
            steps=tuple(StepView(**s.model_dump()) for s in instance.steps),
            history=tuple(HistoryView(**h.model_dump()) for h in instance.history),
            can_act_roles=can_act,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, step_id: str) -> Optional[StepView]:
        return next((s for s in self.steps if s.id == step_id), None)


class ActionResult(BaseModel):
    """Outcome of an orchestrator operation.

    ``hook_failures`` lists post-commit hook errors; the transition described
    by ``snapshot`` is committed regardless.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    snapshot: WorkflowSnapshot
    message: str = ""
    advanced: bool = False
    finalized: bool = False
    replayed: bool = False
    hook_failures: List[HookFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.hook_failures)

    @property
    def status(self) -> InstanceStatus:
        return self.snapshot.status
