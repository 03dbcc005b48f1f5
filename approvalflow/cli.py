"""Command line interface for operating approval workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from approvalflow import (
    ActionResult,
    Actor,
    ApprovalError,
    ApprovalOrchestrator,
    TransactionCriteria,
    WorkflowSnapshot,
    build_orchestrator,
    get_store,
)
from approvalflow.config import load_config
from approvalflow.resolver import RuleBasedConfigResolver, load_rules

app = typer.Typer(help="CLI for approval workflows")

# Command groups
rules_app = typer.Typer(help="Commands for inspecting approval rules")
workflow_app = typer.Typer(help="Commands for managing workflow instances")

app.add_typer(rules_app, name="rules")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (defaults to the configured log_level)"
    ),
) -> None:
    """approvalflow CLI entry point."""
    level = log_level or load_config().log_level
    logging.basicConfig(level=level.upper())


def _orchestrator(rules: Optional[Path]) -> ApprovalOrchestrator:
    config = load_config()
    if rules is not None:
        config.rules_path = str(rules)
    return build_orchestrator(config, store=get_store())


def _fail(exc: ApprovalError) -> None:
    typer.secho(f"{type(exc).__name__}: {exc.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _echo_snapshot(snapshot: WorkflowSnapshot) -> None:
    typer.echo(
        f"Transaction {snapshot.transaction_id}: {snapshot.status.value} "
        f"(version {snapshot.version})"
    )
    if snapshot.rule_name:
        typer.echo(f"Rule: {snapshot.rule_name}")
    if snapshot.conditions:
        typer.echo(f"Conditions: {snapshot.conditions}")
    if snapshot.current_order is not None:
        typer.echo(
            f"Current order: {snapshot.current_order} "
            f"(can act: {', '.join(snapshot.can_act_roles)})"
        )
    for step in snapshot.steps:
        acted = f" by {step.acted_by}" if step.acted_by else ""
        typer.echo(
            f"- {step.id} [order {step.order}] {step.role}: {step.status.value}{acted}"
        )
    for entry in snapshot.history:
        target = f" on {entry.step_id}" if entry.step_id else ""
        typer.echo(
            f"  * {entry.action_type}{target} by {entry.actor_id} at {entry.timestamp.isoformat()}"
        )


def _echo_result(result: ActionResult) -> None:
    typer.echo(result.message)
    for failure in result.hook_failures:
        typer.secho(f"Hook failure: {failure.message}", fg=typer.colors.YELLOW)
    _echo_snapshot(result.snapshot)


@rules_app.command("resolve")
def rules_resolve(
    transaction_type: str = typer.Option(..., help="Transaction type"),
    amount: str = typer.Option(..., help="Transaction amount"),
    facility: Optional[str] = typer.Option(None),
    currency: Optional[str] = typer.Option(None),
    business_model: Optional[str] = typer.Option(None),
    rules: Optional[Path] = typer.Option(None, help="Rules YAML file"),
) -> None:
    """
    Show which approval steps a transaction would require.

    Example:
        approvalflow rules resolve --transaction-type loan --amount 25000 --rules rules.yaml
        # Output: Rule: large-loans
        #         - order 1: manager
        #         - order 1: compliance
        #         - order 2: director
    """
    rules_path = rules or load_config().rules_path
    if rules_path is None:
        typer.secho("No rules file configured", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    resolver = RuleBasedConfigResolver(load_rules(rules_path))
    try:
        criteria = TransactionCriteria(
            transaction_type=transaction_type,
            amount=amount,
            facility=facility,
            currency=currency,
            business_model=business_model,
        )
        config = asyncio.run(resolver.resolve(criteria))
    except ValidationError as exc:
        typer.secho(f"Invalid criteria: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ApprovalError as exc:
        _fail(exc)
    typer.echo(f"Rule: {config.rule_name}")
    if config.conditions:
        typer.echo(f"Conditions: {config.conditions}")
    for template in config.steps:
        typer.echo(f"- order {template.order}: {template.role}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List all workflow instances with their status."""
    store = get_store()
    instances = asyncio.run(store.list_instances())
    if not instances:
        typer.echo("No workflows found")
        return
    for instance in instances:
        typer.echo(f"{instance.transaction_id}\t{instance.status.value}")


@workflow_app.command("show")
def workflow_show(transaction_id: str) -> None:
    """Show steps, history and the actionable roles of a transaction's workflow."""
    orchestrator = _orchestrator(None)
    try:
        snapshot = asyncio.run(orchestrator.get_snapshot(transaction_id))
    except ApprovalError as exc:
        _fail(exc)
    _echo_snapshot(snapshot)


@workflow_app.command("initiate")
def workflow_initiate(
    transaction_id: str,
    initiator: str = typer.Option(..., help="Identity of the requester"),
    transaction_type: str = typer.Option(...),
    amount: str = typer.Option(...),
    facility: Optional[str] = typer.Option(None),
    currency: Optional[str] = typer.Option(None),
    business_model: Optional[str] = typer.Option(None),
    rules: Optional[Path] = typer.Option(None, help="Rules YAML file"),
) -> None:
    """Start an approval workflow for a transaction."""
    orchestrator = _orchestrator(rules)
    criteria = {
        "transaction_type": transaction_type,
        "amount": amount,
        "facility": facility,
        "currency": currency,
        "business_model": business_model,
    }
    try:
        result = asyncio.run(orchestrator.initiate(transaction_id, initiator, criteria))
    except ApprovalError as exc:
        _fail(exc)
    _echo_result(result)


def _act(
    transaction_id: str,
    step_id: str,
    actor: str,
    roles: List[str],
    action: str,
    comment: Optional[str],
) -> None:
    orchestrator = _orchestrator(None)
    try:
        result = asyncio.run(
            orchestrator.process_action(
                transaction_id,
                step_id,
                Actor(id=actor, roles=frozenset(roles)),
                action,
                comment=comment,
            )
        )
    except ApprovalError as exc:
        _fail(exc)
    _echo_result(result)


@workflow_app.command("approve")
def workflow_approve(
    transaction_id: str,
    step_id: str,
    actor: str = typer.Option(..., help="Identity of the approver"),
    role: List[str] = typer.Option(..., help="Role held by the approver (repeatable)"),
    comment: Optional[str] = typer.Option(None),
) -> None:
    """Approve one step of a transaction's workflow."""
    _act(transaction_id, step_id, actor, role, "approve", comment)


@workflow_app.command("reject")
def workflow_reject(
    transaction_id: str,
    step_id: str,
    actor: str = typer.Option(..., help="Identity of the approver"),
    role: List[str] = typer.Option(..., help="Role held by the approver (repeatable)"),
    comment: Optional[str] = typer.Option(None),
) -> None:
    """Reject one step, which rejects the whole workflow."""
    _act(transaction_id, step_id, actor, role, "reject", comment)


@workflow_app.command("cancel")
def workflow_cancel(
    transaction_id: str,
    actor: str = typer.Option(..., help="Identity of the initiator"),
    comment: Optional[str] = typer.Option(None),
) -> None:
    """Cancel a requested workflow; only its initiator may do so."""
    orchestrator = _orchestrator(None)
    try:
        result = asyncio.run(orchestrator.cancel(transaction_id, actor, comment=comment))
    except ApprovalError as exc:
        _fail(exc)
    _echo_result(result)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
