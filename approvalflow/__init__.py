"""approvalflow: Approval workflow orchestration with concurrent-safe parallel groups."""

from .contracts import (
    ActionRequest,
    ActionResult,
    ActionType,
    Actor,
    StepTemplate,
    TransactionCriteria,
    WorkflowConfig,
    WorkflowSnapshot,
)
from .errors import (
    ApprovalError,
    ConfigurationNotFound,
    Conflict,
    HookFailure,
    InvalidRequest,
    NotFound,
    SelfApprovalForbidden,
    Unauthorized,
)
from .hooks import (
    CallbackHook,
    HistoryRecorderHook,
    HookContext,
    HookDispatcher,
    HookPoint,
    WorkflowHook,
)
from .orchestrator import ApprovalOrchestrator, build_orchestrator
from .persistence import InstanceStatus, StepStatus, get_store
from .policies import AllowSelfApprovalPolicy, ForbidInitiatorPolicy
from .resolver import ApprovalRule, RuleBasedConfigResolver, load_rules

__version__ = "0.1.0"
__all__ = [
    "ActionRequest",
    "ActionResult",
    "ActionType",
    "Actor",
    "AllowSelfApprovalPolicy",
    "ApprovalError",
    "ApprovalOrchestrator",
    "ApprovalRule",
    "CallbackHook",
    "ConfigurationNotFound",
    "Conflict",
    "ForbidInitiatorPolicy",
    "HistoryRecorderHook",
    "HookContext",
    "HookDispatcher",
    "HookFailure",
    "HookPoint",
    "InstanceStatus",
    "InvalidRequest",
    "NotFound",
    "RuleBasedConfigResolver",
    "SelfApprovalForbidden",
    "StepStatus",
    "StepTemplate",
    "TransactionCriteria",
    "Unauthorized",
    "WorkflowConfig",
    "WorkflowHook",
    "WorkflowSnapshot",
    "build_orchestrator",
    "get_store",
    "load_rules",
]
