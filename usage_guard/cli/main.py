"""
CLI interface for Usage Guard.

Provides command-line access to quota inspection and maintenance.
"""

import logging
import sys
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_guard.config.loader import Settings, load_settings
from usage_guard.core.errors import ValidationError
from usage_guard.core.quota import UsageInfo, UsageSource
from usage_guard.core.runtime import UsageGuard

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _guard(ctx: typer.Context, initialize: bool = True) -> UsageGuard:
    """Build a usage guard from the settings resolved by the callback."""
    guard = UsageGuard(ctx.obj["settings"])
    if initialize:
        guard.quota_store.init()
    return guard


def _format_limit(value) -> str:
    return "unlimited" if value == float("inf") else str(value)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
):
    """Usage Guard CLI."""
    _configure_logging(log_level)
    try:
        settings = load_settings(config)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        settings = replace(settings, database=replace(settings.database, path=db))
    ctx.obj = {"settings": settings}

    if ctx.invoked_subcommand is None:
        console.print("Usage Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Usage Guard database."""
    guard = _guard(ctx, initialize=False)
    if guard.quota_store.init():
        console.print(f"[green]✓[/] Database initialized at {guard.settings.database.path}")
        sys.exit(EXIT_CODE_PASS)
    console.print("[red]Error initializing database:[/] durable store unavailable")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show durable store availability and protection settings."""
    guard = _guard(ctx)
    health = guard.health()
    settings: Settings = guard.settings

    table = Table(title="Usage Guard Status")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row(
        "Durable store",
        "[green]available[/]" if health["store_available"] else "[yellow]unavailable (degraded)[/]",
    )
    table.add_row("Database", settings.database.path)
    table.add_row("Free daily limit", str(settings.quota.free_daily_limit))
    table.add_row("Timezone", settings.quota.timezone)
    table.add_row("Retention", f"{settings.retention.days} days")
    table.add_row("Circuit breaker", health["breaker"]["state"])
    table.add_row(
        "Breaker thresholds",
        f"{settings.circuit_breaker.failure_threshold} failures, "
        f"{settings.circuit_breaker.reset_timeout:g}s reset",
    )
    table.add_row(
        "Rate limit (free/premium)",
        f"{settings.rate_limit.free.max_requests}/{settings.rate_limit.premium.max_requests} "
        f"per {settings.rate_limit.free.window_seconds:g}s",
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Identity to inspect"),
    premium: bool = typer.Option(False, "--premium", "-p", help="Treat the identity as premium"),
):
    """Show today's usage for an identity."""
    guard = _guard(ctx)
    try:
        info = guard.get_usage(identity, premium)
    except ValidationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_usage(info)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Identity to inspect"),
    days: int = typer.Option(7, "--days", "-d", help="Days to look back (1-90)"),
):
    """Show a per-day usage breakdown for an identity."""
    guard = _guard(ctx)
    try:
        statistics = guard.get_statistics(identity, days)
    except ValidationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage for {statistics.identity} (last {statistics.days} days)")
    table.add_column("Day")
    table.add_column("Summary", justify="right")
    table.add_column("Question", justify="right")
    table.add_column("Total", justify="right")
    for day in statistics.daily:
        table.add_row(day.day.isoformat(), str(day.summary_count), str(day.question_count), str(day.total_count))
    totals = statistics.totals
    table.add_row(
        "[bold]Total[/]", str(totals.summary_count), str(totals.question_count), f"[bold]{totals.total_count}[/]"
    )
    console.print(table)
    if statistics.source is UsageSource.DEGRADED:
        console.print("[yellow]Durable store unavailable; showing in-process counts only[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sweep(ctx: typer.Context):
    """Run one retention pass now."""
    guard = _guard(ctx)
    report = guard.sweep()
    console.print(f"Cutoff: {report.cutoff.isoformat()}")
    console.print(f"Archived counters: {report.archived}")
    console.print(f"Deleted in-memory counters: {report.deleted}")
    if not report.store_available:
        console.print("[red]Durable store unavailable, nothing archived[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Retention sweep complete")
    sys.exit(EXIT_CODE_PASS)


def _display_usage(info: UsageInfo) -> None:
    console.print(f"\n[bold]Usage for {info.identity} on {info.day.isoformat()}[/bold]")
    console.print("-" * 40)
    console.print(f"Used: {info.used}")
    console.print(f"Limit: {_format_limit(info.limit)}")
    console.print(f"Remaining: {_format_limit(info.remaining)}")
    console.print(f"Summaries: {info.summary_used}")
    console.print(f"Questions: {info.question_used}")
    console.print(f"Resets at: {info.reset_at.isoformat()}")
    if info.degraded:
        console.print("[yellow]Durable store unavailable; figure is in-process only[/]")


if __name__ == "__main__":
    app()
