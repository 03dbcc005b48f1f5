"""Resolution of approval configurations from transaction criteria."""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import yaml
from pydantic import BaseModel, Field, model_validator

from .contracts import StepTemplate, TransactionCriteria, WorkflowConfig
from .errors import ConfigurationNotFound

logger = logging.getLogger(__name__)

_MATCH_FIELDS = ("transaction_type", "facility", "currency", "business_model")


class ConfigResolver(Protocol):
    """Maps transaction criteria to the approval steps they require."""

    async def resolve(self, criteria: TransactionCriteria) -> WorkflowConfig:
        """Return the configuration or raise ``ConfigurationNotFound``."""


class ApprovalRule(BaseModel):
    """One configured approval chain and the transactions it applies to.

    Unset filters match anything. The amount band is ``[min_amount,
    max_amount)``.
    """

    name: str
    transaction_type: Optional[str] = None
    facility: Optional[str] = None
    currency: Optional[str] = None
    business_model: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    priority: int = 0
    conditions: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_band(self) -> "ApprovalRule":
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount >= self.max_amount
        ):
            raise ValueError(f"Rule {self.name}: min_amount must be below max_amount")
        return self

    def matches(self, criteria: TransactionCriteria) -> bool:
        for field in _MATCH_FIELDS:
            expected = getattr(self, field)
            if expected is None:
                continue
            actual = getattr(criteria, field)
            if actual is None or str(actual).lower() != expected.lower():
                return False
        if self.min_amount is not None and criteria.amount < self.min_amount:
            return False
        if self.max_amount is not None and criteria.amount >= self.max_amount:
            return False
        return True

    @property
    def specificity(self) -> int:
        filters = [getattr(self, f) for f in _MATCH_FIELDS]
        filters += [self.min_amount, self.max_amount]
        return sum(1 for f in filters if f is not None)


class RuleBasedConfigResolver(ConfigResolver):
    """Pick the most specific matching rule, then the highest priority.

    Remaining ties go to the rule declared first.
    """

    def __init__(self, rules: Sequence[ApprovalRule]) -> None:
        self._rules = list(rules)

    @property
    def rules(self) -> List[ApprovalRule]:
        return list(self._rules)

    def match(self, criteria: TransactionCriteria) -> Optional[ApprovalRule]:
        candidates = [
            (idx, rule) for idx, rule in enumerate(self._rules) if rule.matches(criteria)
        ]
        if not candidates:
            return None
        _, best = min(
            candidates, key=lambda item: (-item[1].specificity, -item[1].priority, item[0])
        )
        return best

    async def resolve(self, criteria: TransactionCriteria) -> WorkflowConfig:
        rule = self.match(criteria)
        if rule is None:
            raise ConfigurationNotFound(
                f"No approval rule matches transaction type {criteria.transaction_type}"
            )
        if not rule.steps:
            raise ConfigurationNotFound(f"Approval rule {rule.name} has no steps")
        logger.debug(
            f"Resolved rule {rule.name} for transaction type {criteria.transaction_type}"
        )
        return WorkflowConfig(
            steps=[s.model_copy() for s in rule.steps],
            conditions=dict(rule.conditions),
            rule_name=rule.name,
        )


def load_rules(path: str | Path) -> List[ApprovalRule]:
    """Load approval rules from a YAML file with a top-level ``rules`` list."""

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return [ApprovalRule(**item) for item in data.get("rules", [])]


__all__ = [
    "ApprovalRule",
    "ConfigResolver",
    "RuleBasedConfigResolver",
    "load_rules",
]
