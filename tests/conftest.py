"""Shared fixtures for approvalflow tests."""

import pytest

import approvalflow.persistence as persistence
from approvalflow import (
    ApprovalOrchestrator,
    ApprovalRule,
    RuleBasedConfigResolver,
    StepTemplate,
)
from approvalflow.persistence import InMemoryWorkflowStore


def scenario_rules() -> list[ApprovalRule]:
    """Manager and compliance in parallel, then director."""
    return [
        ApprovalRule(
            name="large-loans",
            transaction_type="loan",
            min_amount=10000,
            conditions={"lien_hold": True},
            steps=[
                StepTemplate(role="manager", order=1),
                StepTemplate(role="compliance", order=1),
                StepTemplate(role="director", order=2),
            ],
        ),
        ApprovalRule(
            name="small-loans",
            transaction_type="loan",
            max_amount=10000,
            steps=[StepTemplate(role="manager")],
        ),
    ]


@pytest.fixture(autouse=True)
def _reset_store_singleton(monkeypatch):
    monkeypatch.delenv("APPROVALFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("APPROVALFLOW_RULES", raising=False)
    monkeypatch.setenv("APPROVALFLOW_CONFIG", "does-not-exist.yaml")
    persistence._store_instance = None
    yield
    persistence._store_instance = None


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def resolver() -> RuleBasedConfigResolver:
    return RuleBasedConfigResolver(scenario_rules())


@pytest.fixture
def orchestrator(store, resolver) -> ApprovalOrchestrator:
    return ApprovalOrchestrator(store, resolver)
