"""Approval workflow orchestration.

The orchestrator owns every lifecycle transition of a workflow instance and
its steps. It never locks in process: concurrent callers are serialized by
the store's conditional writes.

An accepted approval is two commits. The step write moves one step out of
``pending`` (guarded by its prior status, the instance being requested and
the step belonging to the current order) and bumps the instance version. The
settle write then compares-and-swaps the instance on that version to advance
the current order or finalize it as approved. Callers racing on the same
group all get their step writes in, but only one settle write can match the
version it read; the others re-read and find the group already advanced.

A rejection is a single commit under the same step guard: the step, every
other pending step and the instance status change together, so no approval
or cancel can land between them.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from .config import ApprovalflowConfig, OrchestratorConfig, load_config
from .contracts import (
    ActionRequest,
    ActionResult,
    ActionType,
    Actor,
    StepView,
    TransactionCriteria,
    WorkflowConfig,
    WorkflowSnapshot,
)
from .errors import (
    ConfigurationNotFound,
    Conflict,
    HookFailure,
    InvalidRequest,
    NotFound,
    SelfApprovalForbidden,
    Unauthorized,
)
from .hooks import HistoryRecorderHook, HookContext, HookDispatcher
from .persistence import get_store
from .persistence.models import (
    ApprovalStep,
    HistoryAction,
    HistoryEntry,
    InstanceStatus,
    StepStatus,
    WorkflowInstance,
    utcnow,
)
from .persistence.repository import WorkflowStore
from .policies import ForbidInitiatorPolicy, SelfApprovalPolicy, policy_from_name
from .resolver import ConfigResolver, RuleBasedConfigResolver, load_rules
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

_HISTORY_FOR_ACTION = {
    ActionType.APPROVE: HistoryAction.APPROVED,
    ActionType.REJECT: HistoryAction.REJECTED,
}

# (new status, new current order)
_Decision = Tuple[InstanceStatus, Optional[int]]


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "step"


class ApprovalOrchestrator:
    """Drives workflow instances from ``requested`` to a terminal status."""

    def __init__(
        self,
        store: WorkflowStore,
        resolver: ConfigResolver,
        hooks: Optional[HookDispatcher] = None,
        self_approval_policy: Optional[SelfApprovalPolicy] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._hooks = hooks or HookDispatcher()
        self._policy = self_approval_policy or ForbidInitiatorPolicy()
        self._config = config or OrchestratorConfig()

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def hooks(self) -> HookDispatcher:
        return self._hooks

    # ------------------------------------------------------------------
    # Queries
    async def get_snapshot(self, transaction_id: str) -> WorkflowSnapshot:
        instance = await self._load(transaction_id)
        return WorkflowSnapshot.from_instance(instance)

    async def pending_for(
        self, actor: Actor, transaction_ids: Optional[List[str]] = None
    ) -> List[Tuple[WorkflowSnapshot, StepView]]:
        """Steps ``actor`` may act on right now across requested instances."""

        actionable: List[Tuple[WorkflowSnapshot, StepView]] = []
        instances = await self._store.list_instances(status=InstanceStatus.REQUESTED)
        for instance in instances:
            if transaction_ids is not None and instance.transaction_id not in transaction_ids:
                continue
            snapshot = WorkflowSnapshot.from_instance(instance)
            for step in snapshot.steps:
                if (
                    step.status != StepStatus.PENDING
                    or step.order != snapshot.current_order
                    or not actor.has_role(step.role)
                ):
                    continue
                try:
                    self._policy.check(snapshot, step, actor)
                except SelfApprovalForbidden:
                    continue
                actionable.append((snapshot, step))
        return actionable

    # ------------------------------------------------------------------
    # Initiation
    async def initiate(
        self,
        transaction_id: str,
        initiator_id: str,
        criteria: TransactionCriteria | Mapping[str, Any],
    ) -> ActionResult:
        """Create a requested workflow instance for ``transaction_id``."""

        if not transaction_id or not initiator_id:
            raise InvalidRequest("transaction_id and initiator_id are required")
        criteria = self._coerce_criteria(transaction_id, criteria)

        existing = await self._store.read_snapshot(transaction_id)
        if existing is not None and existing.status == InstanceStatus.REQUESTED:
            raise InvalidRequest(
                f"Transaction {transaction_id} already has an active approval workflow",
                transaction_id=transaction_id,
            )

        await self._hooks.validate_criteria(criteria)
        workflow_config = await self._resolver.resolve(criteria)
        if not workflow_config.steps:
            raise ConfigurationNotFound(
                f"No approval steps configured for transaction {transaction_id}",
                transaction_id=transaction_id,
            )

        request = ActionRequest(
            transaction_id=transaction_id,
            actor_id=initiator_id,
            action=ActionType.INITIATE,
        )
        steps = self._build_steps(workflow_config)
        instance = WorkflowInstance(
            transaction_id=transaction_id,
            initiator_id=initiator_id,
            current_order=workflow_config.orders[0],
            rule_name=workflow_config.rule_name,
            criteria=criteria.model_dump(mode="json"),
            conditions=dict(workflow_config.conditions),
            steps=steps,
            history=[
                HistoryEntry(
                    actor_id=initiator_id,
                    action_type=HistoryAction.INITIATED,
                    timestamp=request.timestamp,
                )
            ],
            created_at=request.timestamp,
            updated_at=request.timestamp,
        )
        if not await self._store.create_instance(instance):
            raise InvalidRequest(
                f"Transaction {transaction_id} already has an active approval workflow",
                transaction_id=transaction_id,
            )
        logger.info(
            f"Initiated workflow {instance.instance_id} for transaction_id={transaction_id} "
            f"with {len(steps)} steps"
        )

        snapshot = await self._snapshot(instance.instance_id)
        failures = await self._hooks.after_instance_initiated(
            HookContext(snapshot=snapshot, request=request)
        )
        return ActionResult(
            snapshot=snapshot, message="Workflow initiated", hook_failures=failures
        )

    @staticmethod
    def _coerce_criteria(
        transaction_id: str, criteria: TransactionCriteria | Mapping[str, Any]
    ) -> TransactionCriteria:
        if isinstance(criteria, TransactionCriteria):
            return criteria
        try:
            return TransactionCriteria.model_validate(dict(criteria))
        except (ValidationError, TypeError) as exc:
            raise InvalidRequest(
                f"Invalid criteria for transaction {transaction_id}: {exc}",
                transaction_id=transaction_id,
            ) from exc

    @staticmethod
    def _build_steps(workflow_config: WorkflowConfig) -> List[ApprovalStep]:
        seen: Counter[str] = Counter()
        steps: List[ApprovalStep] = []
        for template in workflow_config.steps:
            base = f"{_slug(template.role)}-{template.order}"
            seen[base] += 1
            step_id = base if seen[base] == 1 else f"{base}-{seen[base]}"
            steps.append(ApprovalStep(id=step_id, role=template.role, order=template.order))
        return steps

    # ------------------------------------------------------------------
    # Approver actions
    async def process_action(
        self,
        transaction_id: str,
        step_id: str,
        actor: Actor,
        action: ActionType | str,
        comment: Optional[str] = None,
    ) -> ActionResult:
        """Approve or reject one step on behalf of ``actor``."""

        action = ActionType(action)
        if action not in _HISTORY_FOR_ACTION:
            raise InvalidRequest(f"Unsupported step action: {action.value}")
        request = ActionRequest(
            transaction_id=transaction_id,
            actor_id=actor.id,
            action=action,
            step_id=step_id,
            comment=comment,
        )

        lost_race = False
        for attempt in range(self._config.max_conflict_retries):
            instance = await self._load(transaction_id)
            step = instance.get_step(step_id)
            if step is None:
                raise NotFound(
                    f"Step {step_id} not found on transaction {transaction_id}",
                    transaction_id=transaction_id,
                )
            if step.status != StepStatus.PENDING:
                return await self._replay_or_refuse(instance, step, request, lost_race)

            snapshot = WorkflowSnapshot.from_instance(instance)
            self._authorize(snapshot, snapshot.step(step_id), actor)
            await self._hooks.before_action(HookContext(snapshot=snapshot, request=request))

            entry = HistoryEntry(
                actor_id=actor.id,
                action_type=_HISTORY_FOR_ACTION[action],
                timestamp=request.timestamp,
                step_id=step_id,
                comment=comment,
            )
            if action is ActionType.REJECT:
                written = await self._store.conditional_reject_step(
                    instance.instance_id,
                    step_id,
                    acted_by=actor.id,
                    acted_at=request.timestamp,
                    history=entry,
                )
            else:
                written = await self._store.conditional_update_step(
                    instance.instance_id,
                    step_id,
                    expected_status=StepStatus.PENDING,
                    new_status=StepStatus.APPROVED,
                    acted_by=actor.id,
                    acted_at=request.timestamp,
                    history=entry,
                )
            if written:
                break
            lost_race = True
            logger.debug(
                f"Step write for {step_id} lost a race on transaction_id={transaction_id} "
                f"(attempt {attempt + 1})"
            )
            await schedule_retry(attempt, base=self._config.retry_base_delay)
        else:
            logger.warning(
                f"Giving up on {action.value} of {step_id} for transaction_id={transaction_id}"
            )
            raise Conflict(
                f"Could not record {action.value} on step {step_id}; retry against the current snapshot",
                transaction_id=transaction_id,
            )

        logger.info(
            f"Step {step_id} {action.step_status.value} by {actor.id} "
            f"for transaction_id={transaction_id}"
        )
        persisted = await self._snapshot(instance.instance_id)
        failures = await self._hooks.after_step_persisted(
            HookContext(snapshot=persisted, request=request)
        )
        if action is ActionType.REJECT:
            return await self._finalize(
                instance.instance_id, request, persisted, "Workflow rejected", failures
            )
        return await self._settle(
            instance.instance_id, request, origin_order=step.order, failures=failures
        )

    def _authorize(self, snapshot: WorkflowSnapshot, step: StepView, actor: Actor) -> None:
        if not actor.has_role(step.role):
            raise Unauthorized(
                f"Actor {actor.id} lacks role {step.role} for step {step.id}",
                transaction_id=snapshot.transaction_id,
            )
        if step.order != snapshot.current_order:
            raise Unauthorized(
                f"Step {step.id} (order {step.order}) is not actionable; "
                f"current order is {snapshot.current_order}",
                transaction_id=snapshot.transaction_id,
            )
        self._policy.check(snapshot, step, actor)

    async def _replay_or_refuse(
        self,
        instance: WorkflowInstance,
        step: ApprovalStep,
        request: ActionRequest,
        lost_race: bool,
    ) -> ActionResult:
        """Handle an action on a step that already left ``pending``."""

        transaction_id = instance.transaction_id
        if step.status in (StepStatus.APPROVED, StepStatus.REJECTED):
            if step.acted_by == request.actor_id and step.status == request.action.step_status:
                logger.info(
                    f"Replayed {request.action.value} of {step.id} by {request.actor_id} "
                    f"for transaction_id={transaction_id}"
                )
                if instance.status == InstanceStatus.REQUESTED:
                    result = await self._settle(
                        instance.instance_id, request, origin_order=step.order, failures=[]
                    )
                    return result.model_copy(update={"replayed": True})
                return ActionResult(
                    snapshot=WorkflowSnapshot.from_instance(instance),
                    message=f"Action already recorded; workflow {instance.status.value}",
                    replayed=True,
                )
            raise Conflict(
                f"Step {step.id} already {step.status.value} by {step.acted_by}",
                transaction_id=transaction_id,
            )
        if lost_race or instance.status == InstanceStatus.CANCELLED:
            raise Conflict(
                f"Transaction {transaction_id} is {instance.status.value}; "
                f"step {step.id} was withdrawn",
                transaction_id=transaction_id,
            )
        raise NotFound(
            f"No pending step {step.id} on transaction {transaction_id}",
            transaction_id=transaction_id,
        )

    # ------------------------------------------------------------------
    # Settling: group completion, advancing and finalizing
    @staticmethod
    def _evaluate(instance: WorkflowInstance) -> Optional[_Decision]:
        """Return the instance transition the approved steps call for, if any."""

        if instance.current_order is not None and instance.pending_steps(
            instance.current_order
        ):
            return None
        next_order = instance.next_pending_order()
        if next_order is None:
            return InstanceStatus.APPROVED, None
        return InstanceStatus.REQUESTED, next_order

    async def _settle(
        self,
        instance_id: str,
        request: ActionRequest,
        origin_order: Optional[int],
        failures: List[HookFailure],
    ) -> ActionResult:
        failures = list(failures)
        for attempt in range(self._config.max_conflict_retries):
            instance = await self._store.get_instance(instance_id)
            if instance is None:
                raise NotFound(
                    f"Workflow instance {instance_id} disappeared",
                    transaction_id=request.transaction_id,
                )
            if instance.status.is_terminal:
                return ActionResult(
                    snapshot=WorkflowSnapshot.from_instance(instance),
                    message=f"Workflow already {instance.status.value}",
                    hook_failures=failures,
                )

            decision = self._evaluate(instance)
            if decision is None:
                return ActionResult(
                    snapshot=WorkflowSnapshot.from_instance(instance),
                    message=self._waiting_message(instance, origin_order),
                    hook_failures=failures,
                )

            status, next_order = decision
            advanced = await self._store.conditional_advance_instance(
                instance_id,
                instance.version,
                status=status,
                current_order=next_order,
                updated_at=utcnow(),
            )
            if not advanced:
                logger.debug(
                    f"Advance of {instance_id} at version {instance.version} lost a race "
                    f"(attempt {attempt + 1})"
                )
                await schedule_retry(attempt, base=self._config.retry_base_delay)
                continue

            snapshot = await self._snapshot(instance_id)
            if status is InstanceStatus.REQUESTED:
                logger.info(
                    f"Transaction_id={request.transaction_id} advanced to order {next_order}"
                )
                return ActionResult(
                    snapshot=snapshot,
                    message=f"Advanced to order {next_order}; awaiting "
                    + ", ".join(snapshot.can_act_roles),
                    advanced=True,
                    hook_failures=failures,
                )

            return await self._finalize(
                instance_id, request, snapshot, f"Workflow {status.value}", failures
            )

        logger.warning(
            f"Giving up settling {instance_id} for transaction_id={request.transaction_id}"
        )
        raise Conflict(
            f"Could not settle transaction {request.transaction_id}; its step write is committed, "
            "call reconcile to finish",
            transaction_id=request.transaction_id,
        )

    async def _finalize(
        self,
        instance_id: str,
        request: ActionRequest,
        snapshot: WorkflowSnapshot,
        message: str,
        failures: List[HookFailure],
    ) -> ActionResult:
        """Run finalize hooks once the caller's write made the instance terminal."""

        logger.info(f"Transaction_id={request.transaction_id} {snapshot.status.value}")
        failures = failures + await self._hooks.after_instance_finalized(
            HookContext(snapshot=snapshot, request=request)
        )
        return ActionResult(
            snapshot=await self._snapshot(instance_id),
            message=message,
            advanced=True,
            finalized=True,
            hook_failures=failures,
        )

    @staticmethod
    def _waiting_message(instance: WorkflowInstance, origin_order: Optional[int]) -> str:
        roles = sorted({s.role for s in instance.pending_steps(instance.current_order)})
        if origin_order is not None and origin_order != instance.current_order:
            return (
                f"Order {origin_order} complete; awaiting order {instance.current_order}: "
                + ", ".join(roles)
            )
        return "Still pending peer roles: " + ", ".join(roles)

    async def reconcile(self, transaction_id: str, actor_id: str = "system") -> ActionResult:
        """Finish an advance interrupted between the step write and the settle write."""

        instance = await self._load(transaction_id)
        request = ActionRequest(
            transaction_id=transaction_id, actor_id=actor_id, action=ActionType.RECONCILE
        )
        return await self._settle(
            instance.instance_id, request, origin_order=None, failures=[]
        )

    # ------------------------------------------------------------------
    # Cancellation
    async def cancel(
        self, transaction_id: str, actor_id: str, comment: Optional[str] = None
    ) -> ActionResult:
        """Withdraw a requested workflow on behalf of its initiator."""

        request = ActionRequest(
            transaction_id=transaction_id,
            actor_id=actor_id,
            action=ActionType.CANCEL,
            comment=comment,
        )
        vetted = False
        for attempt in range(self._config.max_conflict_retries):
            instance = await self._load(transaction_id)
            if actor_id != instance.initiator_id:
                raise Unauthorized(
                    f"Only the initiator may cancel transaction {transaction_id}",
                    transaction_id=transaction_id,
                )
            if instance.status.is_terminal:
                raise Conflict(
                    f"Transaction {transaction_id} is already {instance.status.value}",
                    transaction_id=transaction_id,
                )
            if not vetted:
                await self._hooks.before_action(
                    HookContext(snapshot=WorkflowSnapshot.from_instance(instance), request=request)
                )
                vetted = True

            cancelled = await self._store.conditional_advance_instance(
                instance.instance_id,
                instance.version,
                status=InstanceStatus.CANCELLED,
                current_order=None,
                updated_at=request.timestamp,
                cancel_pending_by=actor_id,
                history=HistoryEntry(
                    actor_id=actor_id,
                    action_type=HistoryAction.CANCELLED,
                    timestamp=request.timestamp,
                    comment=comment,
                ),
            )
            if cancelled:
                break
            logger.debug(
                f"Cancel of transaction_id={transaction_id} lost a race (attempt {attempt + 1})"
            )
            await schedule_retry(attempt, base=self._config.retry_base_delay)
        else:
            raise Conflict(
                f"Could not cancel transaction {transaction_id}; retry against the current snapshot",
                transaction_id=transaction_id,
            )

        logger.info(f"Transaction_id={transaction_id} cancelled by {actor_id}")
        snapshot = await self._snapshot(instance.instance_id)
        return await self._finalize(
            instance.instance_id, request, snapshot, "Workflow cancelled", []
        )

    # ------------------------------------------------------------------
    async def _load(self, transaction_id: str) -> WorkflowInstance:
        instance = await self._store.read_snapshot(transaction_id)
        if instance is None:
            raise NotFound(
                f"No approval workflow for transaction {transaction_id}",
                transaction_id=transaction_id,
            )
        return instance

    async def _snapshot(self, instance_id: str) -> WorkflowSnapshot:
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            raise NotFound(f"Workflow instance {instance_id} not found")
        return WorkflowSnapshot.from_instance(instance)


def build_orchestrator(
    config: Optional[ApprovalflowConfig] = None,
    store: Optional[WorkflowStore] = None,
    resolver: Optional[ConfigResolver] = None,
) -> ApprovalOrchestrator:
    """Wire an orchestrator from configuration.

    The store comes from ``get_store``, rules from ``config.rules_path`` and
    a ``HistoryRecorderHook`` is registered so finalization is audited.
    """

    config = config or load_config()
    store = store or get_store(config=config)
    if resolver is None:
        rules = load_rules(config.rules_path) if config.rules_path else []
        resolver = RuleBasedConfigResolver(rules)
    return ApprovalOrchestrator(
        store,
        resolver,
        hooks=HookDispatcher([HistoryRecorderHook(store)]),
        self_approval_policy=policy_from_name(config.orchestrator.self_approval),
        config=config.orchestrator,
    )
