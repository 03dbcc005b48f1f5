"""Extension hooks invoked at fixed points of the approval state machine."""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from .contracts import ActionRequest, TransactionCriteria, WorkflowSnapshot
from .errors import ApprovalError, HookFailure, InvalidRequest
from .persistence.models import HistoryAction, HistoryEntry
from .persistence.repository import WorkflowStore

logger = logging.getLogger(__name__)


class HookPoint(str, Enum):
    """Extension points in the order the state machine reaches them."""

    VALIDATE_CRITERIA = "validate_criteria"
    BEFORE_ACTION = "before_action"
    AFTER_STEP_PERSISTED = "after_step_persisted"
    AFTER_INSTANCE_INITIATED = "after_instance_initiated"
    AFTER_INSTANCE_FINALIZED = "after_instance_finalized"


class HookContext(BaseModel):
    """Immutable view handed to every hook."""

    model_config = ConfigDict(frozen=True)

    snapshot: WorkflowSnapshot
    request: ActionRequest


class WorkflowHook:
    """Base class for hooks; override the points you care about.

    ``validate_criteria`` and ``before_action`` run before any write and veto
    by raising. The ``after_*`` points run once the transition committed and
    cannot undo it.
    """

    name: Optional[str] = None

    @property
    def hook_name(self) -> str:
        return self.name or type(self).__name__

    async def validate_criteria(self, criteria: TransactionCriteria) -> None:
        pass

    async def before_action(self, context: HookContext) -> None:
        pass

    async def after_step_persisted(self, context: HookContext) -> None:
        pass

    async def after_instance_initiated(self, context: HookContext) -> None:
        pass

    async def after_instance_finalized(self, context: HookContext) -> None:
        pass


class CallbackHook(WorkflowHook):
    """Adapt a plain function (sync or async) to a single hook point."""

    def __init__(
        self, point: HookPoint, callback: Callable[[Any], Any], name: Optional[str] = None
    ) -> None:
        self.point = point
        self.callback = callback
        self.name = name or getattr(callback, "__name__", None)

    async def _call(self, point: HookPoint, arg: Any) -> None:
        if point is not self.point:
            return
        result = self.callback(arg)
        if inspect.isawaitable(result):
            await result

    async def validate_criteria(self, criteria: TransactionCriteria) -> None:
        await self._call(HookPoint.VALIDATE_CRITERIA, criteria)

    async def before_action(self, context: HookContext) -> None:
        await self._call(HookPoint.BEFORE_ACTION, context)

    async def after_step_persisted(self, context: HookContext) -> None:
        await self._call(HookPoint.AFTER_STEP_PERSISTED, context)

    async def after_instance_initiated(self, context: HookContext) -> None:
        await self._call(HookPoint.AFTER_INSTANCE_INITIATED, context)

    async def after_instance_finalized(self, context: HookContext) -> None:
        await self._call(HookPoint.AFTER_INSTANCE_FINALIZED, context)


class HistoryRecorderHook(WorkflowHook):
    """Append a ``finalized`` audit entry once an instance reaches a terminal status."""

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store

    async def after_instance_finalized(self, context: HookContext) -> None:
        snapshot = context.snapshot
        entry = HistoryEntry(
            actor_id=context.request.actor_id,
            action_type=HistoryAction.FINALIZED,
            comment=f"Workflow {snapshot.status.value}",
        )
        if not await self._store.append_history(snapshot.instance_id, entry):
            raise RuntimeError(f"Instance {snapshot.instance_id} not found in store")


class HookDispatcher:
    """Invoke registered hooks in registration order."""

    def __init__(self, hooks: Optional[Iterable[WorkflowHook]] = None) -> None:
        self._hooks: List[WorkflowHook] = list(hooks or [])

    @property
    def hooks(self) -> List[WorkflowHook]:
        return list(self._hooks)

    def register(self, hook: WorkflowHook) -> WorkflowHook:
        self._hooks.append(hook)
        return hook

    def unregister(self, hook: WorkflowHook) -> None:
        self._hooks.remove(hook)

    # ------------------------------------------------------------------
    # Pre-write points: the first failure vetoes the operation
    async def validate_criteria(self, criteria: TransactionCriteria) -> None:
        for hook in self._hooks:
            try:
                await hook.validate_criteria(criteria)
            except ApprovalError:
                raise
            except Exception as exc:
                raise InvalidRequest(
                    f"Criteria rejected by {hook.hook_name}: {exc}"
                ) from exc

    async def before_action(self, context: HookContext) -> None:
        for hook in self._hooks:
            try:
                await hook.before_action(context)
            except ApprovalError:
                raise
            except Exception as exc:
                raise InvalidRequest(
                    f"Action vetoed by {hook.hook_name}: {exc}",
                    transaction_id=context.request.transaction_id,
                ) from exc

    # ------------------------------------------------------------------
    # Post-commit points: failures are isolated and reported
    async def after_step_persisted(self, context: HookContext) -> List[HookFailure]:
        return await self._notify(HookPoint.AFTER_STEP_PERSISTED, context)

    async def after_instance_initiated(self, context: HookContext) -> List[HookFailure]:
        return await self._notify(HookPoint.AFTER_INSTANCE_INITIATED, context)

    async def after_instance_finalized(self, context: HookContext) -> List[HookFailure]:
        return await self._notify(HookPoint.AFTER_INSTANCE_FINALIZED, context)

    async def _notify(self, point: HookPoint, context: HookContext) -> List[HookFailure]:
        failures: List[HookFailure] = []
        for hook in self._hooks:
            try:
                await getattr(hook, point.value)(context)
            except Exception as exc:
                logger.exception(
                    f"Hook {hook.hook_name} failed at {point.value} "
                    f"for transaction_id={context.request.transaction_id}"
                )
                failures.append(HookFailure(hook.hook_name, point.value, exc))
        return failures


__all__ = [
    "CallbackHook",
    "HistoryRecorderHook",
    "HookContext",
    "HookDispatcher",
    "HookPoint",
    "WorkflowHook",
]
