"""Walk a loan through a parallel approval group and a final sign-off."""

import asyncio
from pathlib import Path

from approvalflow import (
    Actor,
    ApprovalOrchestrator,
    CallbackHook,
    HookDispatcher,
    HookPoint,
    RuleBasedConfigResolver,
    load_rules,
)
from approvalflow.persistence import InMemoryWorkflowStore


def announce(context):
    snapshot = context.snapshot
    print(f"🔔 {snapshot.transaction_id} finished as {snapshot.status.value}")


async def main():
    """Approve a large loan: manager and compliance together, then director."""
    store = InMemoryWorkflowStore()
    rules = load_rules(Path(__file__).parent / "rules.example.yaml")
    hooks = HookDispatcher([CallbackHook(HookPoint.AFTER_INSTANCE_FINALIZED, announce)])
    orchestrator = ApprovalOrchestrator(store, RuleBasedConfigResolver(rules), hooks=hooks)

    result = await orchestrator.initiate(
        "loan-42", "ivan", {"transaction_type": "loan", "amount": "25000"}
    )
    print(f"✅ {result.message} using rule {result.snapshot.rule_name}")
    print(f"📋 Steps: {[s.id for s in result.snapshot.steps]}")

    # Both members of the first group act at the same time
    manager = Actor(id="mia", roles={"manager"})
    compliance = Actor(id="carl", roles={"compliance"})
    first, second = await asyncio.gather(
        orchestrator.process_action("loan-42", "manager-1", manager, "approve"),
        orchestrator.process_action("loan-42", "compliance-1", compliance, "approve"),
    )
    for outcome in (first, second):
        print(f"➡️  {outcome.message}")

    director = Actor(id="dora", roles={"director"})
    final = await orchestrator.process_action(
        "loan-42", "director-2", director, "approve", comment="Collateral verified"
    )
    print(f"🏁 {final.message}")
    for entry in final.snapshot.history:
        print(f"   {entry.sequence}: {entry.action_type} by {entry.actor_id}")


if __name__ == "__main__":
    asyncio.run(main())
