"""
CLI interface for Shipment Payments.

Provides command-line access to quoting, the split payment lifecycle,
webhook reconciliation and tariff administration.
"""

import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from shipment_payments.config.loader import AppConfig, load_app_config, load_secrets, resolve_db_path
from shipment_payments.core.errors import PaymentCoreError, SignatureError, StateConflictError
from shipment_payments.core.quote import Quote, QuoteRequest, calculate_quote
from shipment_payments.core.reconciler import WebhookReconciler
from shipment_payments.core.split_payment import SplitPaymentCoordinator
from shipment_payments.gateway.stripe_client import StripeGateway
from shipment_payments.storage.models import PaymentRecord
from shipment_payments.storage.repository import (
    PaymentRepository,
    PricingConfigRepository,
    ShipmentStatusRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DATE_FORMATS = ["%Y-%m-%d"]


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CliState:
    """Options shared by every command."""
    db_path: str
    config: AppConfig


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _configure_logging(level: LogLevel) -> None:
    logging.basicConfig(
        level=level.value.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _handle_error(e: Exception) -> None:
    """Print a known error and exit with the failure code."""
    if isinstance(e, StateConflictError):
        _fail(f"{e} [dim]({e.reason})[/]")
    if isinstance(e, sqlite3.OperationalError) and "no such table" in str(e).lower():
        _fail("Database is not initialized. Run `shipment-payments init` first.")
    _fail(str(e))


# Errors that are reported to the user rather than raised as tracebacks
HANDLED_ERRORS = (PaymentCoreError, ValueError, LookupError, FileNotFoundError, sqlite3.OperationalError)


def _build_gateway(state: CliState) -> StripeGateway:
    """Stripe gateway from environment secrets and the loaded config."""
    secrets = load_secrets()
    if not secrets.api_key:
        raise ValueError("STRIPE_SECRET_KEY is not set")
    return StripeGateway(
        api_key=secrets.api_key,
        webhook_secret=secrets.webhook_secret,
        retry_policy=state.config.gateway.retry_policy,
        request_timeout=state.config.gateway.request_timeout_seconds,
    )


def _coordinator(state: CliState) -> SplitPaymentCoordinator:
    return SplitPaymentCoordinator(
        payments=PaymentRepository(state.db_path),
        gateway=_build_gateway(state),
        status_provider=ShipmentStatusRepository(state.db_path),
        refund_policy=state.config.refund_policy,
        currency=state.config.gateway.currency,
        deposit_percent=state.config.payments.deposit_percent,
        refund_window_hours=state.config.payments.refund_window_hours,
    )


def _quote(
    state: CliState,
    vehicle: str,
    distance: float,
    pickup_date: Optional[datetime],
    delivery_date: Optional[datetime],
    accident: bool,
    vehicles: int,
) -> Quote:
    active = PricingConfigRepository(state.db_path).get_active_pricing_config()
    request = QuoteRequest(
        vehicle_type=vehicle,
        distance_miles=Decimal(str(distance)),
        pickup_date=pickup_date.date() if pickup_date else None,
        delivery_date=delivery_date.date() if delivery_date else None,
        is_accident_recovery=accident,
        vehicle_count=vehicles,
    )
    return calculate_quote(request, active.config, config_version=active.version)


def _format_cents(cents: int) -> str:
    """Format integer cents as dollars."""
    return f"${Decimal(cents) / 100:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path (env: SHIPMENT_PAYMENTS_DB)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    log_level: LogLevel = typer.Option(LogLevel.WARNING, "--log-level", help="Logging verbosity"),
):
    """Shipment Payments CLI."""
    _configure_logging(log_level)
    try:
        app_config = load_app_config(config)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = CliState(db_path=resolve_db_path(db), config=app_config)
    if ctx.invoked_subcommand is None:
        console.print("Shipment Payments - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and seed the tariff from config."""
    state = _state(ctx)
    try:
        initialize_schema(state.db_path, seed_config=state.config.pricing)
        console.print(f"[green]✓[/] Database initialized at {state.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except (sqlite3.Error, ValueError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Check initialization status and the active tariff version."""
    state = _state(ctx)
    if not Path(state.db_path).exists():
        _fail(f"No database at {state.db_path}. Run `shipment-payments init` first.")
    try:
        active = PricingConfigRepository(state.db_path).get_active_pricing_config()
    except HANDLED_ERRORS as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Shipment Payments is initialized ({state.db_path})")
    console.print(f"Active pricing config: v{active.version} (created {active.created_at:%Y-%m-%d %H:%M})")


@app.command()
def quote(
    ctx: typer.Context,
    vehicle: str = typer.Option(..., "--vehicle", "-v", help="Vehicle type, e.g. sedan"),
    distance: float = typer.Option(..., "--distance", "-d", help="Route distance in miles"),
    pickup_date: Optional[datetime] = typer.Option(None, "--pickup-date", formats=DATE_FORMATS),
    delivery_date: Optional[datetime] = typer.Option(None, "--delivery-date", formats=DATE_FORMATS),
    accident: bool = typer.Option(False, "--accident", help="Accident recovery pricing"),
    vehicles: int = typer.Option(1, "--vehicles", help="Vehicles in the booking (bulk discount)"),
):
    """Calculate a transport quote with the active tariff."""
    state = _state(ctx)
    try:
        result = _quote(state, vehicle, distance, pickup_date, delivery_date, accident, vehicles)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_quote(result)


@app.command()
def deposit(
    ctx: typer.Context,
    shipment_id: str = typer.Argument(..., help="Shipment to book"),
    vehicle: str = typer.Option(..., "--vehicle", "-v"),
    distance: float = typer.Option(..., "--distance", "-d"),
    pickup_date: Optional[datetime] = typer.Option(None, "--pickup-date", formats=DATE_FORMATS),
    delivery_date: Optional[datetime] = typer.Option(None, "--delivery-date", formats=DATE_FORMATS),
    accident: bool = typer.Option(False, "--accident"),
    vehicles: int = typer.Option(1, "--vehicles"),
):
    """Quote a shipment and create its 20% deposit."""
    state = _state(ctx)
    try:
        result = _quote(state, vehicle, distance, pickup_date, delivery_date, accident, vehicles)
        record = _coordinator(state).create_deposit(shipment_id, result)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_record(record)


@app.command("confirm-deposit")
def confirm_deposit(
    ctx: typer.Context,
    shipment_id: str = typer.Argument(...),
    payment_method: str = typer.Option(..., "--payment-method", "-p", help="Gateway payment method id"),
):
    """Confirm the deposit with the client's payment method."""
    try:
        record = _coordinator(_state(ctx)).confirm_deposit(shipment_id, payment_method)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_record(record)


@app.command()
def final(ctx: typer.Context, shipment_id: str = typer.Argument(...)):
    """Charge the remaining 80% once the shipment is delivered."""
    try:
        record = _coordinator(_state(ctx)).create_final_charge(shipment_id)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_record(record)


@app.command("refund-eligibility")
def refund_eligibility(ctx: typer.Context, shipment_id: str = typer.Argument(...)):
    """Show whether, and how much, a shipment can be refunded."""
    state = _state(ctx)
    try:
        coordinator = SplitPaymentCoordinator(
            payments=PaymentRepository(state.db_path),
            gateway=None,
            status_provider=ShipmentStatusRepository(state.db_path),
            refund_policy=state.config.refund_policy,
        )
        result = coordinator.refund_eligibility(shipment_id)
    except HANDLED_ERRORS as e:
        _handle_error(e)

    color = "green" if result.eligible else "yellow"
    console.print(f"[bold]Eligible:[/] [{color}]{'yes' if result.eligible else 'no'}[/]")
    console.print(f"Reason: {result.reason_code.value}")
    console.print(f"Furthest status: {result.furthest_status or 'none'}")
    console.print(f"Max refundable: {_format_cents(result.max_refundable)}")


@app.command()
def refund(
    ctx: typer.Context,
    shipment_id: str = typer.Argument(...),
    amount: int = typer.Option(..., "--amount", "-a", help="Amount to refund, in cents"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
    override_policy: bool = typer.Option(False, "--override-policy", help="Admin refund, skips the refund policy"),
):
    """Refund part or all of the captured amount."""
    try:
        record = _coordinator(_state(ctx)).process_refund(shipment_id, amount, reason, override_policy)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_record(record)


@app.command()
def cancel(ctx: typer.Context, shipment_id: str = typer.Argument(...)):
    """Cancel a payment before the deposit is captured."""
    try:
        record = _coordinator(_state(ctx)).cancel_payment(shipment_id)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    _display_record(record)


@app.command()
def webhook(
    ctx: typer.Context,
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw webhook body"),
    signature: str = typer.Option(..., "--signature", "-s", help="Stripe-Signature header value"),
):
    """Verify and apply one webhook delivery."""
    state = _state(ctx)
    try:
        reconciler = WebhookReconciler(PaymentRepository(state.db_path), _build_gateway(state))
        outcome = reconciler.handle_payload(payload_file.read_bytes(), signature)
    except SignatureError as e:
        console.print(f"[red]Rejected:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except HANDLED_ERRORS as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Webhook processed: {outcome.value}")


@app.command()
def show(ctx: typer.Context, shipment_id: str = typer.Argument(...)):
    """Show a payment record and its audit trail."""
    repository = PaymentRepository(_state(ctx).db_path)
    try:
        record = repository.get(shipment_id)
        transitions = repository.list_transitions(shipment_id) if record else []
    except HANDLED_ERRORS as e:
        _handle_error(e)
    if record is None:
        _fail(f"No payment record for shipment {shipment_id}")

    _display_record(record)
    table = Table(title="Transitions")
    table.add_column("When")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Event")
    table.add_column("Source")
    table.add_column("Gateway event")
    for t in transitions:
        table.add_row(
            f"{t.timestamp:%Y-%m-%d %H:%M:%S}", t.from_state.value, t.to_state.value,
            t.event, t.source, t.gateway_event_id or ""
        )
    console.print(table)


@app.command("config-show")
def config_show(ctx: typer.Context):
    """Print the active tariff as YAML."""
    try:
        active = PricingConfigRepository(_state(ctx).db_path).get_active_pricing_config()
    except HANDLED_ERRORS as e:
        _handle_error(e)
    console.print(f"[bold]Pricing config v{active.version}[/] (by {active.created_by or 'unknown'})")
    console.print(yaml.safe_dump(active.config.to_dict(), sort_keys=True), highlight=False)


@app.command("config-update")
def config_update(
    ctx: typer.Context,
    set_values: List[str] = typer.Option([], "--set", help="field=value; repeatable"),
    patch_file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, dir_okay=False, help="YAML patch"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the tariff is changing"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Who is changing it"),
):
    """Create a new tariff version from a patch."""
    try:
        patch = _read_patch(set_values, patch_file)
        updated = PricingConfigRepository(_state(ctx).db_path).update_pricing_config(patch, reason, actor)
    except (yaml.YAMLError,) + HANDLED_ERRORS as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Pricing config v{updated.version} is now active")


@app.command("config-history")
def config_history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1),
):
    """Show the tariff change log, newest first."""
    try:
        history = PricingConfigRepository(_state(ctx).db_path).get_config_history(limit)
    except HANDLED_ERRORS as e:
        _handle_error(e)

    table = Table(title="Pricing config history")
    table.add_column("Version", justify="right")
    table.add_column("Changed")
    table.add_column("Actor")
    table.add_column("Reason")
    table.add_column("Fields")
    for entry in history:
        table.add_row(
            str(entry.config_version),
            f"{entry.changed_at:%Y-%m-%d %H:%M}",
            entry.actor or "",
            entry.reason,
            ", ".join(sorted(entry.new_values)),
        )
    console.print(table)


def _read_patch(set_values: List[str], patch_file: Optional[Path]) -> dict:
    """Merge ``--file`` and ``--set`` into one patch; ``--set`` wins."""
    patch = {}
    if patch_file is not None:
        loaded = yaml.safe_load(patch_file.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Patch file must contain a mapping")
        patch.update(loaded)
    for item in set_values:
        name, sep, raw = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected field=value, got '{item}'")
        # YAML scalars: true/false, numbers, strings
        patch[name.strip()] = yaml.safe_load(raw)
    return patch


def _display_quote(result: Quote) -> None:
    """Display a quote breakdown."""
    table = Table(title="Quote", show_header=False)
    table.add_column("Item")
    table.add_column("Value", justify="right")
    table.add_row("Vehicle", result.vehicle_type)
    table.add_row("Distance", f"{result.distance_miles} mi ({result.distance_band.value})")
    table.add_row("Billable miles", str(result.billable_miles))
    table.add_row("Rate per mile", f"${result.rate_per_mile}")
    table.add_row("Base price", f"${result.raw_base_price:,.2f}")
    if result.bulk_discount_percent:
        table.add_row("Bulk discount", f"{result.bulk_discount_percent}%")
    table.add_row("Service level", f"{result.service_level.value} (x{result.applied_multiplier})")
    table.add_row("Fuel adjustment", f"{result.fuel_adjustment_percent}%")
    if result.surge_applied:
        table.add_row("Surge", f"x{result.surge_multiplier}")
    if result.minimum_applied:
        table.add_row("Minimum applied", "yes")
    if result.config_version is not None:
        table.add_row("Tariff version", f"v{result.config_version}")
    table.add_row("[bold]Total[/]", f"[bold]{_format_cents(result.total_cents)}[/]")
    console.print(table)


def _display_record(record: PaymentRecord) -> None:
    """Display a payment record summary."""
    console.print(f"\n[bold]Payment[/bold] {record.shipment_id}  [cyan]{record.state.value}[/]")
    console.print("-" * 40)
    console.print(f"Total:    {_format_cents(record.total_amount)} {record.currency.upper()}")
    console.print(f"Deposit:  {_format_cents(record.deposit_amount)} ({record.deposit_status or '-'})")
    console.print(f"Final:    {_format_cents(record.final_amount)} ({record.final_status or '-'})")
    if record.refunded_amount:
        console.print(f"Refunded: {_format_cents(record.refunded_amount)}")
    console.print(f"Version:  {record.version}")


if __name__ == "__main__":
    app()
