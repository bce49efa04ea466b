"""
CLI interface for Launch Pilot.

Inspect and adjust credit ledgers, list tiers, and run the AI response
normalizer over saved completions.
"""

import json
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from launch_pilot.config.loader import Settings, load_settings
from launch_pilot.core import ledger
from launch_pilot.core.normalizer import normalize
from launch_pilot.core.tiers import TIER_HIERARCHY, TIER_TABLE, Tier
from launch_pilot.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj or Settings()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """Launch Pilot CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    try:
        ctx.obj = load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("Launch Pilot - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show the active configuration."""
    settings = _settings(ctx)
    console.print(f"Database: {settings.database}")
    console.print(f"Provider: {settings.ai.provider.value}")
    console.print(f"Max input chars: {settings.limits.max_input_chars:,}")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Launch Pilot database."""
    try:
        initialize_schema(_settings(ctx).database)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def tiers():
    """List subscription tiers and their monthly allowances."""
    table = Table(title="Subscription Tiers")
    table.add_column("Tier")
    table.add_column("Tokens/month", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Model")
    for tier in TIER_HIERARCHY:
        spec = TIER_TABLE.get_spec(tier)
        table.add_row(spec.name, f"{spec.token_limit:,}", f"${spec.price}", spec.model)
    console.print(table)


def _print_balance(user: str, entry) -> None:
    console.print(f"\n[bold]User:[/bold] {user}")
    console.print(f"Tier: {entry.tier.value}")
    console.print(f"Used this month: {entry.used_this_month:,} / {ledger.allowance(entry):,}")
    console.print(f"Remaining: {ledger.remaining(entry):,}")
    console.print(f"Usage: {ledger.usage_percentage(entry):.1f}%")


@app.command()
def balance(
    ctx: typer.Context,
    user: str = typer.Option("anonymous", "--user", "-u", help="User key")
):
    """Show a user's credit balance."""
    entry = get_repository(_settings(ctx).database).read(user)
    _print_balance(user, entry)


@app.command()
def debit(
    ctx: typer.Context,
    amount: int = typer.Argument(..., help="Credits to consume"),
    user: str = typer.Option("anonymous", "--user", "-u", help="User key"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Feature charged")
):
    """Consume credits from a user's ledger."""
    try:
        entry = get_repository(_settings(ctx).database).debit(user, amount, feature=feature)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _print_balance(user, entry)


@app.command("top-up")
def top_up(
    ctx: typer.Context,
    user: str = typer.Option("anonymous", "--user", "-u", help="User key"),
    amount: Optional[int] = typer.Option(None, "--amount", "-a", help="Credits to add"),
    package: Optional[int] = typer.Option(
        None,
        "--package",
        "-p",
        help="Credit package number (1-3)"
    )
):
    """Add purchased credits (simulated, no payment is captured)."""
    if (amount is None) == (package is None):
        console.print("[red]Error:[/] pass exactly one of --amount or --package")
        sys.exit(EXIT_CODE_FAIL)
    repo = get_repository(_settings(ctx).database)
    try:
        if package is not None:
            entry = repo.purchase_package(user, package - 1)
        else:
            entry = repo.top_up(user, amount)
    except IndexError:
        console.print(f"[red]Error:[/] unknown credit package {package}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _print_balance(user, entry)


@app.command("set-tier")
def set_tier(
    ctx: typer.Context,
    tier: str = typer.Argument(..., help="free, starter, industry, ultra or lifetime"),
    user: str = typer.Option("anonymous", "--user", "-u", help="User key"),
    payment: bool = typer.Option(False, "--payment", help="Record a payment")
):
    """Change a user's subscription tier."""
    try:
        new_tier = Tier(tier.lower())
    except ValueError:
        console.print(f"[red]Error:[/] unknown tier {tier}")
        sys.exit(EXIT_CODE_FAIL)
    try:
        entry = get_repository(_settings(ctx).database).set_tier(user, new_tier, is_payment=payment)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _print_balance(user, entry)


@app.command()
def history(
    ctx: typer.Context,
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user key"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum events to show")
):
    """Show recent ledger events."""
    try:
        events = get_repository(_settings(ctx).database).fetch_usage_events(user_key=user, limit=limit)
    except sqlite3.Error as e:
        console.print(f"[red]Error reading ledger events:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not events:
        console.print("[dim]No ledger events recorded.[/]")
        return
    table = Table(title="Ledger Events")
    for column in ("Time", "User", "Kind", "Amount", "Feature", "Used after"):
        table.add_column(column)
    for event in events:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M"),
            event.user_key,
            event.kind.value,
            f"{event.amount:,}",
            event.feature or "",
            f"{event.used_after:,}",
        )
    console.print(table)


@app.command("normalize")
def normalize_command(
    path: str = typer.Argument("-", help="File with a raw AI completion, or - for stdin"),
    allow_partial: bool = typer.Option(
        True,
        "--partial/--no-partial",
        help="Allow recovery of truncated responses"
    )
):
    """Recover JSON from a raw AI completion."""
    if path == "-":
        raw = sys.stdin.read()
    else:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = f.read()
        except OSError as e:
            console.print(f"[red]Error:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)

    result = normalize(raw, allow_partial=allow_partial)
    if not result.ok:
        console.print("[red]Unrecoverable:[/] no JSON could be recovered")
        for error in result.errors:
            console.print(f"  [dim]{error}[/]")
        sys.exit(EXIT_CODE_FAIL)

    label = f"{result.tier.value}{' (partial)' if result.partial else ''}"
    console.print(f"[bold]Tier:[/bold] {label}")
    console.print_json(json.dumps(result.value))
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
