import pytest

from approvalflow import (
    ActionType,
    Actor,
    AllowSelfApprovalPolicy,
    ApprovalError,
    ApprovalOrchestrator,
    ApprovalRule,
    CallbackHook,
    ConfigurationNotFound,
    Conflict,
    HistoryRecorderHook,
    HookDispatcher,
    HookPoint,
    InstanceStatus,
    InvalidRequest,
    NotFound,
    RuleBasedConfigResolver,
    SelfApprovalForbidden,
    StepStatus,
    StepTemplate,
    TransactionCriteria,
    Unauthorized,
    WorkflowHook,
)
from approvalflow.persistence.models import utcnow

CRITERIA = {"transaction_type": "loan", "amount": "25000", "currency": "USD"}

INITIATOR = "ivan"
MANAGER = Actor(id="mia", roles={"manager"})
COMPLIANCE = Actor(id="carl", roles={"compliance"})
DIRECTOR = Actor(id="dora", roles={"director"})


def _statuses(snapshot):
    return {s.id: s.status for s in snapshot.steps}


@pytest.mark.asyncio
async def test_initiate_builds_steps_from_resolved_rule(orchestrator):
    result = await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    snapshot = result.snapshot
    assert result.message == "Workflow initiated"
    assert snapshot.status == InstanceStatus.REQUESTED
    assert snapshot.initiator_id == INITIATOR
    assert snapshot.rule_name == "large-loans"
    assert snapshot.conditions == {"lien_hold": True}
    assert snapshot.current_order == 1
    assert snapshot.can_act_roles == ("compliance", "manager")
    assert [(s.id, s.role, s.order) for s in snapshot.steps] == [
        ("manager-1", "manager", 1),
        ("compliance-1", "compliance", 1),
        ("director-2", "director", 2),
    ]
    assert all(s.status == StepStatus.PENDING for s in snapshot.steps)
    assert [(h.action_type, h.actor_id) for h in snapshot.history] == [
        ("initiated", INITIATOR)
    ]


@pytest.mark.asyncio
async def test_scenario_a_parallel_group_then_director(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    first = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    assert first.status == InstanceStatus.REQUESTED
    assert not first.advanced
    assert first.message == "Still pending peer roles: compliance"
    assert first.snapshot.current_order == 1
    assert _statuses(first.snapshot) == {
        "manager-1": StepStatus.APPROVED,
        "compliance-1": StepStatus.PENDING,
        "director-2": StepStatus.PENDING,
    }

    second = await orchestrator.process_action(
        "tx-1", "compliance-1", COMPLIANCE, "approve"
    )
    assert second.status == InstanceStatus.REQUESTED
    assert second.advanced
    assert second.message == "Advanced to order 2; awaiting director"
    assert second.snapshot.current_order == 2
    assert second.snapshot.can_act_roles == ("director",)

    final = await orchestrator.process_action("tx-1", "director-2", DIRECTOR, "approve")
    assert final.status == InstanceStatus.APPROVED
    assert final.finalized
    assert final.message == "Workflow approved"
    assert final.snapshot.current_order is None
    assert final.snapshot.can_act_roles == ()
    assert [h.action_type for h in final.snapshot.history] == [
        "initiated",
        "approved",
        "approved",
        "approved",
    ]
    sequences = [h.sequence for h in final.snapshot.history]
    assert sequences == sorted(sequences)


@pytest.mark.asyncio
async def test_scenario_b_rejection_cancels_remaining_steps(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    result = await orchestrator.process_action(
        "tx-1", "manager-1", MANAGER, "reject", comment="collateral missing"
    )

    assert result.status == InstanceStatus.REJECTED
    assert result.finalized
    steps = {s.id: s for s in result.snapshot.steps}
    assert steps["manager-1"].status == StepStatus.REJECTED
    assert steps["compliance-1"].status == StepStatus.CANCELLED
    assert steps["director-2"].status == StepStatus.CANCELLED
    assert steps["compliance-1"].acted_by == MANAGER.id
    rejection = result.snapshot.history[-1]
    assert (rejection.action_type, rejection.comment) == ("rejected", "collateral missing")

    with pytest.raises(NotFound):
        await orchestrator.process_action("tx-1", "compliance-1", COMPLIANCE, "approve")
    with pytest.raises(NotFound):
        await orchestrator.process_action("tx-1", "director-2", DIRECTOR, "approve")
    with pytest.raises(Conflict):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    with pytest.raises(Conflict):
        await orchestrator.cancel("tx-1", INITIATOR)


@pytest.mark.asyncio
async def test_scenario_c_cancel_while_requested(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    result = await orchestrator.cancel("tx-1", INITIATOR, comment="withdrawn")

    assert result.status == InstanceStatus.CANCELLED
    assert result.finalized
    assert result.message == "Workflow cancelled"
    assert _statuses(result.snapshot) == {
        "manager-1": StepStatus.APPROVED,
        "compliance-1": StepStatus.CANCELLED,
        "director-2": StepStatus.CANCELLED,
    }
    assert result.snapshot.history[-1].action_type == "cancelled"

    # approving after the cancel committed loses
    with pytest.raises(Conflict):
        await orchestrator.process_action("tx-1", "compliance-1", COMPLIANCE, "approve")
    with pytest.raises(Conflict):
        await orchestrator.cancel("tx-1", INITIATOR)


@pytest.mark.asyncio
async def test_only_initiator_may_cancel(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(Unauthorized):
        await orchestrator.cancel("tx-1", MANAGER.id)
    with pytest.raises(NotFound):
        await orchestrator.cancel("tx-unknown", INITIATOR)

    snapshot = await orchestrator.get_snapshot("tx-1")
    assert snapshot.status == InstanceStatus.REQUESTED


@pytest.mark.asyncio
async def test_actor_needs_the_step_role(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(Unauthorized):
        await orchestrator.process_action("tx-1", "compliance-1", MANAGER, "approve")

    snapshot = await orchestrator.get_snapshot("tx-1")
    assert snapshot.version == 1
    assert len(snapshot.history) == 1


@pytest.mark.asyncio
async def test_later_order_is_not_actionable_yet(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(Unauthorized) as excinfo:
        await orchestrator.process_action("tx-1", "director-2", DIRECTOR, "approve")
    assert "current order is 1" in excinfo.value.message
    assert excinfo.value.transaction_id == "tx-1"


@pytest.mark.asyncio
async def test_initiator_cannot_approve_own_workflow(orchestrator):
    await orchestrator.initiate("tx-1", MANAGER.id, CRITERIA)

    with pytest.raises(SelfApprovalForbidden):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    with pytest.raises(Unauthorized):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "reject")


@pytest.mark.asyncio
async def test_self_approval_policy_can_be_relaxed(store, resolver):
    orchestrator = ApprovalOrchestrator(
        store, resolver, self_approval_policy=AllowSelfApprovalPolicy()
    )
    await orchestrator.initiate("tx-1", MANAGER.id, CRITERIA)

    result = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    assert result.snapshot.step("manager-1").status == StepStatus.APPROVED


@pytest.mark.asyncio
async def test_unknown_transaction_or_step(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.process_action("tx-unknown", "manager-1", MANAGER, "approve")
    with pytest.raises(NotFound):
        await orchestrator.get_snapshot("tx-unknown")

    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    with pytest.raises(NotFound):
        await orchestrator.process_action("tx-1", "auditor-9", MANAGER, "approve")


@pytest.mark.asyncio
async def test_only_approve_and_reject_are_step_actions(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(InvalidRequest):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "cancel")
    with pytest.raises(ValueError):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "escalate")


@pytest.mark.asyncio
async def test_repeating_an_action_is_idempotent(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    again = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    assert again.replayed
    assert again.status == InstanceStatus.REQUESTED
    assert again.snapshot.version == 2
    assert [h.action_type for h in again.snapshot.history] == ["initiated", "approved"]

    with pytest.raises(Conflict):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "reject")
    other_manager = Actor(id="max", roles={"manager"})
    with pytest.raises(Conflict):
        await orchestrator.process_action("tx-1", "manager-1", other_manager, "approve")


@pytest.mark.asyncio
async def test_replay_after_finalization_reports_terminal_state(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    await orchestrator.process_action("tx-1", "manager-1", MANAGER, "reject")

    again = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "reject")

    assert again.replayed
    assert not again.finalized
    assert again.status == InstanceStatus.REJECTED
    assert again.message == "Action already recorded; workflow rejected"


@pytest.mark.asyncio
async def test_initiate_validates_input(orchestrator):
    with pytest.raises(InvalidRequest):
        await orchestrator.initiate("", INITIATOR, CRITERIA)
    with pytest.raises(InvalidRequest):
        await orchestrator.initiate("tx-1", "", CRITERIA)
    with pytest.raises(InvalidRequest):
        await orchestrator.initiate("tx-1", INITIATOR, {"amount": "10"})
    with pytest.raises(InvalidRequest):
        await orchestrator.initiate(
            "tx-1", INITIATOR, {"transaction_type": "loan", "amount": "-1"}
        )
    assert await orchestrator.store.list_instances() == []


@pytest.mark.asyncio
async def test_initiate_accepts_criteria_model(orchestrator):
    criteria = TransactionCriteria(transaction_type="loan", amount=500)

    result = await orchestrator.initiate("tx-1", INITIATOR, criteria)

    assert result.snapshot.rule_name == "small-loans"
    assert [s.id for s in result.snapshot.steps] == ["manager-1"]


@pytest.mark.asyncio
async def test_initiate_without_matching_rule(orchestrator):
    with pytest.raises(ConfigurationNotFound):
        await orchestrator.initiate(
            "tx-1", INITIATOR, {"transaction_type": "lease", "amount": "100"}
        )
    with pytest.raises(NotFound):
        await orchestrator.get_snapshot("tx-1")


@pytest.mark.asyncio
async def test_initiate_rejects_rule_without_steps(store):
    orchestrator = ApprovalOrchestrator(
        store,
        RuleBasedConfigResolver([ApprovalRule(name="empty", transaction_type="loan")]),
    )
    with pytest.raises(ConfigurationNotFound):
        await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)


@pytest.mark.asyncio
async def test_one_active_workflow_per_transaction(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(InvalidRequest):
        await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    await orchestrator.cancel("tx-1", INITIATOR)
    again = await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    assert again.snapshot.status == InstanceStatus.REQUESTED
    assert len(await orchestrator.store.list_instances(transaction_id="tx-1")) == 2
    assert (await orchestrator.get_snapshot("tx-1")).instance_id == again.snapshot.instance_id


@pytest.mark.asyncio
async def test_duplicate_roles_get_distinct_step_ids(store):
    rule = ApprovalRule(
        name="two-signatures",
        transaction_type="loan",
        steps=[
            StepTemplate(role="Credit Officer"),
            StepTemplate(role="Credit Officer", is_parallel=True),
            StepTemplate(role="director"),
        ],
    )
    orchestrator = ApprovalOrchestrator(store, RuleBasedConfigResolver([rule]))

    result = await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    assert [(s.id, s.order) for s in result.snapshot.steps] == [
        ("credit-officer-1", 1),
        ("credit-officer-1-2", 1),
        ("director-2", 2),
    ]


@pytest.mark.asyncio
async def test_single_approver_of_last_group_finalizes(orchestrator):
    await orchestrator.initiate(
        "tx-1", INITIATOR, {"transaction_type": "loan", "amount": "50"}
    )

    result = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    assert result.finalized
    assert result.status == InstanceStatus.APPROVED


@pytest.mark.asyncio
async def test_hooks_run_in_registration_order(store, resolver):
    calls = []

    class Recorder(WorkflowHook):
        def __init__(self, name):
            self.name = name

        async def validate_criteria(self, criteria):
            calls.append((self.name, "validate_criteria", criteria.transaction_type))

        async def before_action(self, context):
            calls.append((self.name, "before_action", context.request.action.value))

        async def after_step_persisted(self, context):
            step = context.snapshot.step(context.request.step_id)
            calls.append((self.name, "after_step_persisted", step.status.value))

        async def after_instance_initiated(self, context):
            calls.append((self.name, "after_instance_initiated", context.snapshot.status.value))

        async def after_instance_finalized(self, context):
            calls.append((self.name, "after_instance_finalized", context.snapshot.status.value))

    hooks = HookDispatcher([Recorder("first"), Recorder("second")])
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)

    await orchestrator.initiate("tx-1", INITIATOR, {"transaction_type": "loan", "amount": "5"})
    await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    assert calls == [
        ("first", "validate_criteria", "loan"),
        ("second", "validate_criteria", "loan"),
        ("first", "after_instance_initiated", "requested"),
        ("second", "after_instance_initiated", "requested"),
        ("first", "before_action", "approve"),
        ("second", "before_action", "approve"),
        ("first", "after_step_persisted", "approved"),
        ("second", "after_step_persisted", "approved"),
        ("first", "after_instance_finalized", "approved"),
        ("second", "after_instance_finalized", "approved"),
    ]


@pytest.mark.asyncio
async def test_validate_hook_vetoes_initiation(store, resolver):
    def no_leases_over_limit(criteria):
        if criteria.amount > 20000:
            raise ValueError("amount above facility limit")

    hooks = HookDispatcher(
        [CallbackHook(HookPoint.VALIDATE_CRITERIA, no_leases_over_limit)]
    )
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)

    with pytest.raises(InvalidRequest) as excinfo:
        await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    assert "no_leases_over_limit" in excinfo.value.message
    assert await store.list_instances() == []


@pytest.mark.asyncio
async def test_before_action_veto_leaves_state_untouched(store, resolver):
    def frozen_accounts(context):
        raise RuntimeError("account frozen")

    hooks = HookDispatcher([CallbackHook(HookPoint.BEFORE_ACTION, frozen_accounts)])
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    with pytest.raises(InvalidRequest):
        await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    with pytest.raises(InvalidRequest):
        await orchestrator.cancel("tx-1", INITIATOR)

    snapshot = await orchestrator.get_snapshot("tx-1")
    assert snapshot.version == 1
    assert snapshot.status == InstanceStatus.REQUESTED
    assert snapshot.step("manager-1").status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_post_commit_hook_failure_is_reported_not_rolled_back(store, resolver):
    seen = []

    def broken(context):
        raise RuntimeError("mailer down")

    async def notifier(context):
        seen.append(context.request.step_id)

    hooks = HookDispatcher(
        [
            CallbackHook(HookPoint.AFTER_STEP_PERSISTED, broken, name="mailer"),
            CallbackHook(HookPoint.AFTER_STEP_PERSISTED, notifier),
        ]
    )
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    result = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")

    assert result.partial
    assert [f.hook_name for f in result.hook_failures] == ["mailer"]
    assert result.hook_failures[0].point == "after_step_persisted"
    assert isinstance(result.hook_failures[0].original, RuntimeError)
    assert seen == ["manager-1"]
    snapshot = await orchestrator.get_snapshot("tx-1")
    assert snapshot.step("manager-1").status == StepStatus.APPROVED


@pytest.mark.asyncio
async def test_history_recorder_appends_finalized_entry(store, resolver):
    hooks = HookDispatcher([HistoryRecorderHook(store)])
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    result = await orchestrator.cancel("tx-1", INITIATOR)

    assert [h.action_type for h in result.snapshot.history] == [
        "initiated",
        "cancelled",
        "finalized",
    ]
    finalized = result.snapshot.history[-1]
    assert finalized.actor_id == INITIATOR
    assert finalized.comment == "Workflow cancelled"


@pytest.mark.asyncio
async def test_reconcile_finishes_interrupted_advance(orchestrator, store):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    instance = await store.read_snapshot("tx-1")
    # step writes committed but the process died before settling the group
    for step_id, actor in (("manager-1", MANAGER), ("compliance-1", COMPLIANCE)):
        assert await store.conditional_update_step(
            instance.instance_id,
            step_id,
            expected_status=StepStatus.PENDING,
            new_status=StepStatus.APPROVED,
            acted_by=actor.id,
            acted_at=utcnow(),
        )

    result = await orchestrator.reconcile("tx-1")

    assert result.advanced
    assert result.snapshot.current_order == 2

    idle = await orchestrator.reconcile("tx-1")
    assert not idle.advanced
    assert idle.message == "Still pending peer roles: director"


@pytest.mark.asyncio
async def test_replayed_action_settles_an_unsettled_group(orchestrator, store):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    await orchestrator.process_action("tx-1", "manager-1", MANAGER, "approve")
    instance = await store.read_snapshot("tx-1")
    await store.conditional_update_step(
        instance.instance_id,
        "compliance-1",
        expected_status=StepStatus.PENDING,
        new_status=StepStatus.APPROVED,
        acted_by=COMPLIANCE.id,
        acted_at=utcnow(),
    )

    result = await orchestrator.process_action(
        "tx-1", "compliance-1", COMPLIANCE, "approve"
    )

    assert result.replayed
    assert result.advanced
    assert result.snapshot.current_order == 2


@pytest.mark.asyncio
async def test_pending_for_lists_actionable_steps(orchestrator):
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)
    await orchestrator.initiate("tx-2", MANAGER.id, CRITERIA)
    await orchestrator.initiate("tx-3", INITIATOR, {"transaction_type": "loan", "amount": "5"})
    await orchestrator.cancel("tx-3", INITIATOR)

    manager_items = await orchestrator.pending_for(MANAGER)
    assert [(snap.transaction_id, step.id) for snap, step in manager_items] == [
        ("tx-1", "manager-1")
    ]
    assert await orchestrator.pending_for(DIRECTOR) == []

    compliance_items = await orchestrator.pending_for(COMPLIANCE, transaction_ids=["tx-2"])
    assert [(snap.transaction_id, step.id) for snap, step in compliance_items] == [
        ("tx-2", "compliance-1")
    ]


@pytest.mark.asyncio
async def test_rejection_commits_as_one_write(store, resolver):
    outcomes = {}

    async def act_after_rejection(context):
        if context.request.action is not ActionType.REJECT:
            return
        assert context.snapshot.status == InstanceStatus.REJECTED
        for name, call in (
            ("approve", orchestrator.process_action("tx-1", "compliance-1", COMPLIANCE, "approve")),
            ("cancel", orchestrator.cancel("tx-1", INITIATOR)),
        ):
            try:
                outcomes[name] = await call
            except ApprovalError as exc:
                outcomes[name] = exc

    hooks = HookDispatcher(
        [CallbackHook(HookPoint.AFTER_STEP_PERSISTED, act_after_rejection)]
    )
    orchestrator = ApprovalOrchestrator(store, resolver, hooks=hooks)
    await orchestrator.initiate("tx-1", INITIATOR, CRITERIA)

    result = await orchestrator.process_action("tx-1", "manager-1", MANAGER, "reject")

    assert not result.partial
    assert result.finalized
    assert result.message == "Workflow rejected"
    assert isinstance(outcomes["approve"], NotFound)
    assert isinstance(outcomes["cancel"], Conflict)
    snapshot = await orchestrator.get_snapshot("tx-1")
    assert snapshot.status == InstanceStatus.REJECTED
    assert _statuses(snapshot) == {
        "manager-1": StepStatus.REJECTED,
        "compliance-1": StepStatus.CANCELLED,
        "director-2": StepStatus.CANCELLED,
    }
    assert [h.action_type for h in snapshot.history] == ["initiated", "rejected"]
