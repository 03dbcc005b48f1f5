"""Error taxonomy for approval workflow orchestration."""

from __future__ import annotations

from typing import Optional


class ApprovalError(Exception):
    """Base class for all orchestration errors."""

    def __init__(self, message: str, transaction_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id


class InvalidRequest(ApprovalError):
    """Malformed, vetoed or duplicate request."""


class ConfigurationNotFound(ApprovalError):
    """No workflow rule matches the transaction criteria."""


class NotFound(ApprovalError):
    """Unknown transaction or no actionable step."""


class Unauthorized(ApprovalError):
    """Role, order or initiator check failed."""


class SelfApprovalForbidden(Unauthorized):
    """The actor may not act on a workflow they initiated."""


class Conflict(ApprovalError):
    """Lost a concurrency race or retried with a mismatching action."""


class HookFailure(ApprovalError):
    """A post-commit hook raised; the committed transition stands."""

    def __init__(self, hook_name: str, point: str, original: BaseException) -> None:
        super().__init__(f"Hook {hook_name} failed at {point}: {original}")
        self.hook_name = hook_name
        self.point = point
        self.original = original


__all__ = [
    "ApprovalError",
    "InvalidRequest",
    "ConfigurationNotFound",
    "NotFound",
    "Unauthorized",
    "SelfApprovalForbidden",
    "Conflict",
    "HookFailure",
]
