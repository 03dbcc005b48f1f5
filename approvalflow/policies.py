"""Self-approval policies."""

from __future__ import annotations

from typing import Protocol

from .contracts import Actor, StepView, WorkflowSnapshot
from .errors import SelfApprovalForbidden


class SelfApprovalPolicy(Protocol):
    """Decides whether ``actor`` may act on ``step`` given who initiated the workflow."""

    def check(self, snapshot: WorkflowSnapshot, step: StepView, actor: Actor) -> None:
        """Raise ``SelfApprovalForbidden`` to refuse the action."""


class ForbidInitiatorPolicy:
    """The initiator may not approve or reject any step of their own workflow."""

    def check(self, snapshot: WorkflowSnapshot, step: StepView, actor: Actor) -> None:
        if actor.id == snapshot.initiator_id:
            raise SelfApprovalForbidden(
                f"Actor {actor.id} initiated transaction {snapshot.transaction_id} "
                f"and cannot act on step {step.id}",
                transaction_id=snapshot.transaction_id,
            )


class AllowSelfApprovalPolicy:
    def check(self, snapshot: WorkflowSnapshot, step: StepView, actor: Actor) -> None:
        return None


def policy_from_name(name: str) -> SelfApprovalPolicy:
    if name == "forbid_initiator":
        return ForbidInitiatorPolicy()
    if name == "allow":
        return AllowSelfApprovalPolicy()
    raise ValueError(f"Unsupported self-approval policy: {name}")
