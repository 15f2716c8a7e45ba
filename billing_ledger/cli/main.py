"""
CLI interface for the billing ledger.

Provides operator access to policies, billable events, invoices and reports.
"""

import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from billing_ledger.config.loader import LedgerConfig, load_ledger_config, load_policies, load_triggers
from billing_ledger.core.audit import AuditTrail
from billing_ledger.core.errors import LedgerError
from billing_ledger.core.events import BillableEventLedger, TriggerInput
from billing_ledger.core.invoices import InvoiceLedger
from billing_ledger.core.policies import PolicyRegistry
from billing_ledger.core.pricing import describe_policy
from billing_ledger.core.reconciliation import summarize
from billing_ledger.logging_config import configure_logging
from billing_ledger.storage.db import DEFAULT_DB_PATH
from billing_ledger.storage.models import BillableEvent, EventStatus, PaymentRecord
from billing_ledger.storage.repository import SqliteLedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(None, "--db", help=f"SQLite database path (default {DEFAULT_DB_PATH})")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Ledger YAML configuration")
ACTOR_OPTION = typer.Option("cli", "--actor", help="Actor recorded in history and audit")


@dataclass
class Services:
    """Ledger components wired to one database."""
    config: Optional[LedgerConfig]
    repository: SqliteLedgerRepository
    policies: PolicyRegistry
    events: BillableEventLedger
    invoices: InvoiceLedger


def _open(db: Optional[str], config_path: Optional[str]) -> Services:
    """Load configuration and build the ledger services."""
    config = load_ledger_config(config_path) if config_path else None
    if config is not None:
        configure_logging(level=config.log_level)

    db_path = db or (config.storage.db_path if config else DEFAULT_DB_PATH)
    initialize_schema(db_path)

    repository = SqliteLedgerRepository(db_path)
    audit = AuditTrail(repository)
    policies = PolicyRegistry(repository, audit)
    events = BillableEventLedger(repository, policies, audit)
    invoices = InvoiceLedger(
        repository,
        events,
        policies,
        audit=audit,
        default_payment_terms_days=config.defaults.payment_terms_days if config else 30,
    )
    return Services(config, repository, policies, events, invoices)


def _fail(error: Exception) -> None:
    if isinstance(error, LedgerError):
        console.print(f"[red]Error ({error.code}):[/] {error.message}")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"{name} must be a number")


def _format_money(amount: Decimal, currency: str) -> str:
    return f"{currency} {amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Billing ledger CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Billing Ledger - Use --help to see available commands")


@app.command()
def init(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Initialize the ledger database."""
    try:
        services = _open(db, config)
        console.print(f"[green]✓[/] Database initialized at {services.repository.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command("load-policies")
def load_policies_command(
    path: str = typer.Argument(..., help="YAML file with a 'policies' list"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Register client fee policies from a YAML file."""
    try:
        services = _open(db, config)
        defaults = services.config.defaults if services.config else None
        loaded = load_policies(path, defaults)
    except Exception as e:
        _fail(e)

    failed = 0
    for policy in loaded:
        try:
            services.policies.add_policy(policy, actor)
            console.print(f"[green]✓[/] {policy.client_code}: {policy.client_name}")
        except LedgerError as e:
            failed += 1
            console.print(f"[red]✗[/] {policy.client_code}: {e.message}")

    console.print(f"\nLoaded {len(loaded) - failed} of {len(loaded)} policies")
    sys.exit(EXIT_CODE_FAIL if failed else EXIT_CODE_PASS)


@app.command()
def policies(
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    show_all: bool = typer.Option(False, "--all", "-a", help="Include inactive versions"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print each policy's fee structure")
):
    """List client fee policies."""
    try:
        services = _open(db, config)
        rows = services.policies.list_policies(active_only=not show_all)
    except Exception as e:
        _fail(e)

    if not rows:
        console.print("[dim]No policies found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Fee Policies")
    table.add_column("Code")
    table.add_column("Client")
    table.add_column("Version", justify="right")
    table.add_column("Active")
    table.add_column("Currency")
    table.add_column("Terms", justify="right")
    table.add_column("Policy ID", style="dim")
    for policy in rows:
        table.add_row(
            policy.client_code,
            policy.client_name,
            str(policy.version),
            "yes" if policy.is_active else "no",
            policy.currency,
            f"Net {policy.payment_terms_days}",
            policy.policy_id,
        )
    console.print(table)

    if verbose:
        for policy in rows:
            console.print()
            console.print(policy.description or describe_policy(policy))
    sys.exit(EXIT_CODE_PASS)


@app.command("create-event")
def create_event(
    client_code: str = typer.Argument(..., help="Client code of an active policy"),
    control_number: str = typer.Argument(..., help="Upstream placement/control number"),
    trigger_date: str = typer.Argument(..., help="Trigger date (YYYY-MM-DD)"),
    fee_type: str = typer.Argument(..., help="Fee type to bill"),
    trigger_type: Optional[str] = typer.Option(None, "--trigger-type", help="Defaults to the policy trigger rule"),
    amount: Optional[str] = typer.Option(None, "--amount", help="Bill this amount instead of calculating it"),
    base_amount: Optional[str] = typer.Option(None, "--base-amount", help="Base for percentage or tiered fees"),
    candidate: Optional[str] = typer.Option(None, "--candidate", help="Candidate name"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Notes carried onto the invoice memo"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Create a billable event for a client."""
    try:
        services = _open(db, config)
        policy = services.policies.get_active_policy_for_code(client_code)
        if policy is None:
            console.print(f"[red]Error (VALIDATION_ERROR):[/] No active policy for client code {client_code}")
            sys.exit(EXIT_CODE_FAIL)

        trigger = TriggerInput(
            client_id=policy.client_id,
            control_number=control_number,
            trigger_date=trigger_date,
            trigger_type=trigger_type or policy.trigger_rule.value,
            fee_type=fee_type,
            amount=_decimal(amount, "amount"),
            base_amount=_decimal(base_amount, "base amount"),
            candidate_name=candidate,
            notes=notes,
        )
        event = services.events.create(policy, trigger, actor)
    except typer.BadParameter:
        raise
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/] Created event {event.event_id}")
    console.print(f"Idempotency key: {event.idempotency_key}")
    console.print(f"Amount: {_format_money(event.amount, event.currency)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("import-events")
def import_events(
    path: str = typer.Argument(..., help="YAML file with a 'triggers' list"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Create billable events for every trigger in a YAML file.

    Duplicates are skipped and reported; the command fails only when a
    trigger could not be processed.
    """
    try:
        services = _open(db, config)
        triggers = load_triggers(path)
        workers = services.config.bulk_workers if services.config else 1
        result = services.events.bulk_create(triggers, actor, max_workers=workers)
    except Exception as e:
        _fail(e)

    for event in result.created:
        console.print(f"[green]✓[/] {event.idempotency_key} {_format_money(event.amount, event.currency)}")
    for duplicate in result.duplicates:
        console.print(f"[yellow]=[/] #{duplicate.index + 1} duplicate of {duplicate.idempotency_key}")
    for failure in result.errors:
        console.print(f"[red]✗[/] #{failure.index + 1} {failure.control_number}: ({failure.code}) {failure.message}")

    console.print(
        f"\nCreated {len(result.created)}, duplicates {len(result.duplicates)}, "
        f"errors {len(result.errors)}"
    )
    sys.exit(EXIT_CODE_FAIL if result.errors else EXIT_CODE_PASS)


@app.command()
def approve(
    event_id: str = typer.Argument(...),
    notes: Optional[str] = typer.Option(None, "--notes", help="Approval notes"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Approve a pending or held event."""
    try:
        event = _open(db, config).events.approve(event_id, actor, notes)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Event {event.event_id} is {event.status.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def hold(
    event_id: str = typer.Argument(...),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the event is held"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Put an event on hold."""
    try:
        event = _open(db, config).events.hold(event_id, actor, reason)
    except Exception as e:
        _fail(e)
    console.print(f"[yellow]⏸[/] Event {event.event_id} is {event.status.value}: {event.hold_reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def invoice(
    event_id: str = typer.Argument(...),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Create the invoice for an approved event.

    The CLI has no accounting connection, so the invoice is recorded
    locally with a generated document number.
    """
    try:
        services = _open(db, config)
        if services.config and services.config.features.enable_invoice_write:
            console.print("[yellow]Accounting write is enabled but no client is configured; recording locally[/]")
        link = services.invoices.create_invoice(event_id, actor)
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/] Invoice {link.external_doc_number} created")
    console.print(f"Invoice ID: {link.invoice_id}")
    console.print(f"Amount: {_format_money(link.amount, link.currency)}")
    console.print(f"Due: {link.due_date.isoformat()}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pay(
    invoice_id: str = typer.Argument(...),
    amount: str = typer.Argument(..., help="Payment amount"),
    payment_id: str = typer.Option(..., "--payment-id", help="External payment id"),
    payment_date: Optional[str] = typer.Option(None, "--date", help="Payment date (YYYY-MM-DD), today by default"),
    currency: Optional[str] = typer.Option(None, "--currency", help="Defaults to the invoice currency"),
    method: Optional[str] = typer.Option(None, "--method", help="Payment method"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    actor: str = ACTOR_OPTION
):
    """Apply a payment to an invoice."""
    try:
        services = _open(db, config)
        link = services.invoices.get(invoice_id)
        payment = PaymentRecord(
            external_payment_id=payment_id,
            payment_date=date.fromisoformat(payment_date) if payment_date else date.today(),
            amount=_decimal(amount, "amount"),
            currency=(currency or link.currency).upper(),
            method=method,
        )
        link = services.invoices.apply_payment(invoice_id, payment, actor)
    except typer.BadParameter:
        raise
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/] Invoice {link.external_doc_number} is {link.status.value}")
    console.print(f"Paid: {_format_money(link.total_paid, link.currency)}")
    console.print(f"Balance: {_format_money(link.balance, link.currency)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def events(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    client: Optional[str] = typer.Option(None, "--client", help="Filter by client id"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """List billable events."""
    try:
        status_filter = EventStatus(status.upper()) if status else None
    except ValueError:
        valid = [s.value for s in EventStatus]
        console.print(f"[red]Error:[/] status must be one of: {valid}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        rows = _open(db, config).repository.list_events(status=status_filter, client_id=client)
    except Exception as e:
        _fail(e)

    if not rows:
        console.print("[dim]No billable events found.[/]")
        sys.exit(EXIT_CODE_PASS)

    _display_events(rows)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    today: Optional[str] = typer.Option(None, "--today", help="Report date (YYYY-MM-DD), today by default"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Show outstanding, overdue and aging totals."""
    try:
        services = _open(db, config)
        if services.config and not services.config.features.enable_reconciliation:
            console.print("[yellow]Reconciliation is disabled in configuration[/]")
            sys.exit(EXIT_CODE_FAIL)
        as_of = date.fromisoformat(today) if today else date.today()
        summary = summarize(services.invoices.list_all(), as_of)
    except Exception as e:
        _fail(e)

    console.print(f"\n[bold]Reconciliation as of {summary.as_of.isoformat()}[/bold]")
    console.print("-" * 40)
    console.print(f"Invoices: {summary.invoice_count}")
    console.print(f"Total outstanding: {summary.total_outstanding:,.2f}")
    console.print(f"Total overdue: {summary.total_overdue:,.2f}")

    if summary.by_currency:
        currency_table = Table(title="By Currency")
        currency_table.add_column("Currency")
        currency_table.add_column("Outstanding", justify="right")
        currency_table.add_column("Overdue", justify="right")
        for code, totals in sorted(summary.by_currency.items()):
            currency_table.add_row(code, f"{totals.outstanding:,.2f}", f"{totals.overdue:,.2f}")
        console.print(currency_table)

    aging_table = Table(title="Aging")
    aging_table.add_column("Days overdue")
    aging_table.add_column("Count", justify="right")
    aging_table.add_column("Amount", justify="right")
    for bucket, totals in summary.aging.items():
        aging_table.add_row(bucket, str(totals.count), f"{totals.amount:,.2f}")
    console.print(aging_table)

    for row in summary.overdue:
        console.print(
            f"[red]{row.external_doc_number}[/] {row.customer_name} "
            f"{_format_money(row.balance, row.currency)} - {row.days_overdue} days overdue"
        )
    sys.exit(EXIT_CODE_PASS)


def _display_events(rows: List[BillableEvent]) -> None:
    table = Table(title="Billable Events")
    table.add_column("Event ID", style="dim")
    table.add_column("Idempotency Key")
    table.add_column("Client")
    table.add_column("Trigger Date")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    for event in rows:
        table.add_row(
            event.event_id,
            event.idempotency_key,
            event.client_code,
            event.trigger_date.isoformat(),
            _format_money(event.amount, event.currency),
            event.status.value,
        )
    console.print(table)


if __name__ == "__main__":
    app()
