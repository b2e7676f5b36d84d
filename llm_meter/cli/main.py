"""
CLI interface for LLM Meter.

Provides command-line access to metering and balance administration.
"""

import json
import logging
import sys
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from llm_meter.config.loader import MeterConfig, load_meter_config
from llm_meter.core.admin import (
    reset_balances,
    reset_status,
    update_balance,
    update_default_balance,
)
from llm_meter.core.errors import MeterError
from llm_meter.core.metering import UsageEvent
from llm_meter.runtime import Runtime
from llm_meter.storage.repository import initialize_schema, upsert_model_price

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config() -> MeterConfig:
    """Load configuration from the environment, exiting on invalid settings."""
    try:
        return load_meter_config()
    except (ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] invalid configuration: {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)


def _get_runtime() -> Runtime:
    """Build a runtime from the environment."""
    return Runtime(_load_config())


def _parse_decimal(value: str, name: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite():
        console.print(f"[red]Error:[/] {name} must be a number")
        sys.exit(EXIT_CODE_FAIL)
    return amount


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """LLM Meter CLI."""
    level = _load_config().log_level if ctx.invoked_subcommand else "WARNING"
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    if ctx.invoked_subcommand is None:
        console.print("LLM Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the LLM Meter database."""
    try:
        initialize_schema(_load_config().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-user")
def add_user(
    user_id: str = typer.Argument(..., help="User identifier"),
    email: str = typer.Option(..., "--email", "-e", help="User email"),
    name: str = typer.Option(..., "--name", "-n", help="Display name"),
    role: str = typer.Option("user", "--role", "-r", help="User role"),
):
    """Create a user with the configured initial balance (or refresh one)."""
    runtime = _get_runtime()
    account = runtime.ledger.get_or_create_user(user_id, email, name, role)
    console.print(
        f"[green]✓[/] User {account.id} ({account.name}) balance "
        f"{_format_currency(account.balance)}"
    )


@app.command("set-price")
def set_price(
    model_id: str = typer.Argument(..., help="Model identifier"),
    input_price: str = typer.Option(..., "--input", "-i", help="Input price per million tokens"),
    output_price: str = typer.Option(..., "--output", "-o", help="Output price per million tokens"),
    per_message: str = typer.Option("-1", "--per-message", "-p", help="Fixed price per message (-1 for per-token)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
):
    """Store the price of a model."""
    runtime = _get_runtime()
    upsert_model_price(
        model_id,
        name or model_id,
        _parse_decimal(input_price, "input price"),
        _parse_decimal(output_price, "output price"),
        _parse_decimal(per_message, "per-message price"),
        db_path=runtime.config.db_path,
    )
    console.print(f"[green]✓[/] Price stored for {model_id}")


@app.command()
def charge(
    payload: Path = typer.Argument(..., help="JSON file with the outlet payload"),
):
    """Charge a user for one completed exchange."""
    try:
        data = json.loads(payload.read_text(encoding="utf-8"))
        event = UsageEvent.from_payload(data)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error reading payload:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    runtime = _get_runtime()
    outcome = runtime.meter.process(event)
    console.print_json(data=outcome.to_dict())
    sys.exit(EXIT_CODE_PASS if outcome.success else EXIT_CODE_FAIL)


@app.command()
def reset(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Reset a single user"),
    force: bool = typer.Option(False, "--force", "-f", help="Reset all users even if not due"),
):
    """Reset balances to their default values."""
    runtime = _get_runtime()
    try:
        result = reset_balances(runtime.scheduler, user_id=user, force=force)
    except MeterError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    colour = "green" if result["success"] else "yellow"
    console.print(f"[{colour}]{result['message']}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status():
    """Show reset configuration and user balances."""
    runtime = _get_runtime()
    info = reset_status(runtime.scheduler)

    console.print("\n[bold]Balance Reset Status[/bold]")
    console.print("-" * 40)
    console.print(f"Auto-reset: {'enabled' if info['scheduler']['enabled'] else 'disabled'}")
    console.print(f"Reset day: {info['reset_day']} (effective this month: {info['effective_reset_day']})")
    console.print(f"Last reset: {info['last_reset'] or 'never'}")
    console.print(f"Reset due now: {'yes' if info['should_reset_today'] else 'no'}")

    users = runtime.ledger.fetch_users()
    if not users:
        console.print("\n[dim]No users found.[/]")
        return

    table = Table(title="Users")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Balance", justify="right")
    table.add_column("Default", justify="right")
    for account in users:
        table.add_row(
            account.id,
            account.name,
            _format_currency(account.balance),
            _format_currency(account.default_balance),
        )
    console.print(table)


@app.command("set-default")
def set_default(
    user_id: str = typer.Argument(..., help="User identifier"),
    amount: str = typer.Argument(..., help="New default balance"),
):
    """Set the balance a user is reset to."""
    runtime = _get_runtime()
    try:
        result = update_default_balance(runtime.scheduler, user_id, _parse_decimal(amount, "amount"))
    except MeterError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Default balance for {user_id} set to {_format_currency(result['default_balance'])}")


@app.command("set-balance")
def set_balance(
    user_id: str = typer.Argument(..., help="User identifier"),
    amount: str = typer.Argument(..., help="New current balance"),
):
    """Overwrite a user's current balance."""
    runtime = _get_runtime()
    try:
        result = update_balance(runtime.scheduler, user_id, _parse_decimal(amount, "amount"))
    except MeterError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Balance for {user_id} set to {_format_currency(result['balance'])}")


@app.command()
def run():
    """Run the monthly reset scheduler until interrupted."""
    runtime = _get_runtime()
    runtime.ensure_initialized()
    console.print("[green]✓[/] Scheduler running - press Ctrl+C to stop")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        pass
    finally:
        runtime.shutdown()
    console.print("Scheduler stopped")


def _format_currency(amount) -> str:
    """Format currency with sign, symbol and four decimal places."""
    amount = Decimal(str(amount))
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.4f}"


if __name__ == "__main__":
    app()
