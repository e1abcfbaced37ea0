"""
CLI interface for Credit Monitor.

Provides command-line access to the balance history, analytics,
alerts and the background monitor.
"""

import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from credit_monitor.config.loader import (
    DEFAULT_CONFIG_PATH,
    MonitorConfig,
    default_config,
    load_config,
)
from credit_monitor.core.alerts import AlertEngine, ConsoleNotifier
from credit_monitor.core.analytics import AlertLevel, AnalyticsEngine, UsageAnalytics
from credit_monitor.core.errors import AuthError, MonitorError
from credit_monitor.core.monitor import BalanceMonitor, CycleResult
from credit_monitor.demo.seed_demo_data import seed_demo_data
from credit_monitor.extraction.engine import SESSION_COOKIE, BalanceExtractor
from credit_monitor.extraction.session_api import UsageReport
from credit_monitor.storage.repository import BalanceRepository

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_AUTH = 2

_LEVEL_STYLES = {
    AlertLevel.INFO: "blue",
    AlertLevel.WARNING: "yellow",
    AlertLevel.CRITICAL: "red",
}


def setup_logging(verbose: bool) -> None:
    """Route log records through rich on stderr."""
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%Y-%m-%d %H:%M:%S]",
        handlers=[handler],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _resolve_config(path: Optional[str]) -> MonitorConfig:
    if path:
        return load_config(path)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return default_config()


def _config(ctx: typer.Context) -> MonitorConfig:
    return ctx.obj["config"]


def _repository(config: MonitorConfig) -> BalanceRepository:
    repository = BalanceRepository(config.database_path)
    repository.initialize_schema()
    return repository


def _build_monitor(config: MonitorConfig, alert_engine: Optional[AlertEngine] = None) -> BalanceMonitor:
    if not config.credential:
        raise AuthError("No credential configured; set 'credential' or CREDIT_MONITOR_TOKEN")
    return BalanceMonitor(
        extractor=BalanceExtractor.from_config(config),
        repository=_repository(config),
        credential=config.credential,
        alert_engine=alert_engine or AlertEngine(
            low_threshold=config.alerts.low_balance_threshold,
            critical_threshold=config.alerts.critical_balance_threshold,
            cooldown_seconds=config.alerts.cooldown_seconds,
        ),
        interval=config.polling_interval_seconds,
        retention_days=config.data_retention_days,
        prune_interval_hours=config.prune_interval_hours,
        alerts_enabled=config.alerts.enabled,
    )


def _fail(message: str, error: Exception) -> NoReturn:
    console.print(f"[red]{message}[/] {error}")
    sys.exit(EXIT_CODE_AUTH if isinstance(error, AuthError) else EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to YAML config (defaults to ./{DEFAULT_CONFIG_PATH} if present)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """Credit Monitor CLI."""
    setup_logging(verbose)
    try:
        ctx.obj = {"config": _resolve_config(config)}
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("Credit Monitor - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the balance database."""
    try:
        _repository(_config(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except MonitorError as e:
        _fail("Error initializing database:", e)


@app.command()
def status(ctx: typer.Context):
    """Show the last stored balance."""
    try:
        snapshot = _repository(_config(ctx)).latest_balance()
    except MonitorError as e:
        _fail("Error:", e)

    if snapshot is None:
        console.print("[bold yellow]No balance recorded yet[/]")
        console.print("Run `credit-monitor refresh` to fetch the current balance.")
        sys.exit(EXIT_CODE_OK)

    console.print(f"[bold]Balance:[/bold] {snapshot.amount:,} credits")
    console.print(f"[dim]Recorded {snapshot.timestamp.isoformat(timespec='seconds')} via {snapshot.source}[/]")
    sys.exit(EXIT_CODE_OK)


@app.command()
def refresh(ctx: typer.Context):
    """Fetch the balance now, store it and evaluate alerts."""
    try:
        monitor = _build_monitor(_config(ctx))
        with console.status("Fetching balance..."):
            result = monitor.manual_refresh()
    except AuthError as e:
        _fail("Authentication failed:", e)
    except MonitorError as e:
        _fail("Error fetching balance:", e)

    _display_cycle(result)
    sys.exit(EXIT_CODE_OK)


@app.command()
def analytics(
    ctx: typer.Context,
    hours: int = typer.Option(24, "--hours", min=1, help="Window size in hours"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
):
    """Usage analytics for the last N hours."""
    try:
        result = AnalyticsEngine(_repository(_config(ctx))).usage_analytics(hours)
    except MonitorError as e:
        _fail("Error:", e)

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _display_analytics(result)
    sys.exit(EXIT_CODE_OK)


@app.command()
def alerts(
    ctx: typer.Context,
    low: Optional[int] = typer.Option(None, "--low", help="Low balance threshold"),
    critical: Optional[int] = typer.Option(None, "--critical", help="Critical balance threshold"),
):
    """Alert conditions that hold right now (no cooldown, nothing sent)."""
    config = _config(ctx)
    low = config.alerts.low_balance_threshold if low is None else low
    critical = config.alerts.critical_balance_threshold if critical is None else critical
    if critical >= low:
        console.print("[red]Error:[/] --critical must be less than --low")
        sys.exit(EXIT_CODE_FAIL)

    try:
        current = AnalyticsEngine(_repository(config)).balance_alerts(low, critical)
    except MonitorError as e:
        _fail("Error:", e)

    if not current:
        console.print("[green]✓[/] No alerts")
    for alert in current:
        style = _LEVEL_STYLES[alert.level]
        console.print(f"[{style}]{alert.level.name}[/] {alert.message}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def predict(
    ctx: typer.Context,
    hours_ahead: float = typer.Option(24.0, "--hours-ahead", min=0, help="Forecast horizon in hours"),
):
    """Credits expected to be used over the next N hours."""
    try:
        usage = AnalyticsEngine(_repository(_config(ctx))).predicted_usage(hours_ahead)
    except MonitorError as e:
        _fail("Error:", e)

    console.print(f"Predicted usage over the next {hours_ahead:g} hours: [bold]{usage:,.1f}[/] credits")
    sys.exit(EXIT_CODE_OK)


@app.command()
def prune(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Days of history to keep"),
):
    """Delete history older than the retention period."""
    config = _config(ctx)
    days = config.data_retention_days if days is None else days
    try:
        snapshots, usage = _repository(config).prune(days)
    except MonitorError as e:
        _fail("Error pruning history:", e)

    console.print(f"[green]✓[/] Removed {snapshots} snapshots and {usage} usage records older than {days} days")
    sys.exit(EXIT_CODE_OK)


@app.command()
def validate(ctx: typer.Context):
    """Check that the configured credential reaches the billing page."""
    config = _config(ctx)
    if not config.credential:
        console.print("[red]No credential configured[/]")
        sys.exit(EXIT_CODE_AUTH)

    try:
        valid = BalanceExtractor.from_config(config).validate_token(config.credential)
    except AuthError as e:
        _fail("Credential rejected:", e)

    if valid:
        console.print("[green]✓[/] Credential is valid")
        sys.exit(EXIT_CODE_OK)
    console.print("[yellow]Credential could not be validated[/]")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def watch(ctx: typer.Context):
    """Poll in the foreground, printing each cycle until interrupted."""
    config = _config(ctx)
    try:
        monitor = _build_monitor(config, AlertEngine(
            notifier=ConsoleNotifier(),
            low_threshold=config.alerts.low_balance_threshold,
            critical_threshold=config.alerts.critical_balance_threshold,
            cooldown_seconds=config.alerts.cooldown_seconds,
        ))
    except MonitorError as e:
        _fail("Error:", e)

    monitor.on_change(_display_cycle)
    monitor.start()
    console.print(f"Watching balance every {config.polling_interval_seconds}s (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        monitor.stop()
    sys.exit(EXIT_CODE_OK)


@app.command()
def report(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", min=1, max=90, help="Reporting window in days"),
):
    """Credit consumption by day, model and activity (session cookie only)."""
    config = _config(ctx)
    if config.credential_kind != SESSION_COOKIE:
        console.print("[red]Error:[/] consumption reports need credential_kind: session_cookie")
        sys.exit(EXIT_CODE_FAIL)
    if not config.credential:
        console.print("[red]No credential configured[/]")
        sys.exit(EXIT_CODE_AUTH)

    client = BalanceExtractor.from_config(config).session_client(config.credential)
    try:
        with console.status("Fetching usage reports..."):
            subscription = client.fetch_subscription()
            usage = client.fetch_usage_report(days)
    except AuthError as e:
        _fail("Authentication failed:", e)
    except MonitorError as e:
        _fail("Error fetching reports:", e)

    _display_report(usage, subscription, days)
    sys.exit(EXIT_CODE_OK)


@app.command("seed-demo")
def seed_demo(
    ctx: typer.Context,
    hours: int = typer.Option(24, "--hours", min=1, help="Hours of history to generate"),
):
    """Fill the database with a plausible demo balance history."""
    try:
        count = seed_demo_data(_config(ctx).database_path, hours=hours)
    except MonitorError as e:
        _fail("Error seeding demo data:", e)

    console.print(f"[green]✓[/] Inserted {count} demo snapshots")
    sys.exit(EXIT_CODE_OK)


def _format_hours(hours: Optional[float]) -> str:
    """Format a duration in hours, switching to days past two days."""
    if hours is None:
        return "N/A"
    if hours > 48:
        return f"{hours / 24:.1f} days"
    return f"{hours:.1f} hours"


def _display_cycle(result: CycleResult):
    """Print the outcome of one monitoring cycle."""
    if not result.ok:
        style = "red" if result.auth_failed else "yellow"
        console.print(f"[{style}]Cycle failed:[/] {result.error}")
        return

    console.print(f"[green]✓[/] Balance: [bold]{result.balance:,}[/] credits [dim]({result.source})[/]")
    if result.analytics is not None:
        console.print(f"Usage rate: {result.analytics.usage_rate_per_hour:,.1f}/hour, "
                      f"time remaining: {_format_hours(result.analytics.estimated_hours_remaining)}")
    for alert in result.alerts:
        console.print(f"[{_LEVEL_STYLES[alert.level]}]{alert.title}:[/] {alert.message}")


def _display_analytics(result: UsageAnalytics):
    """Display analytics as a two-column table."""
    table = Table(title=f"Usage analytics (last {result.total_usage_period}h)")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    balance = "N/A" if result.current_balance is None else f"{result.current_balance:,}"
    peak = "N/A" if result.peak_usage_hour is None else f"{result.peak_usage_hour:02d}:00 UTC"

    table.add_row("Current balance", balance)
    table.add_row("Usage rate", f"{result.usage_rate_per_hour:,.1f}/hour")
    table.add_row("Daily rate", f"{result.usage_rate_per_day:,.1f}/day")
    table.add_row("Time remaining", _format_hours(result.estimated_hours_remaining))
    table.add_row("Average session usage", f"{result.average_session_usage:,.1f}")
    table.add_row("Peak usage hour", peak)
    table.add_row("Trend", result.trend.value)
    table.add_row("Efficiency score", f"{result.efficiency_score:.0f}/100")
    table.add_row("Snapshots", str(len(result.balance_history)))

    console.print(table)


def _display_report(usage: UsageReport, subscription: Dict[str, Any], days: int):
    """Display consumption reports as rich tables."""
    plan = subscription.get("planName") if isinstance(subscription, dict) else None
    if plan:
        period_end = subscription.get("billingPeriodEnd") or "N/A"
        console.print(f"[bold]Plan:[/] {plan} [dim](billing period ends {period_end})[/]")

    total = "N/A" if usage.total_credits_consumed is None else f"{usage.total_credits_consumed:,}"
    console.print(f"Credits consumed in the last {days} days: [bold]{total}[/]")
    console.print(f"Average daily usage: {usage.average_daily_usage:,.1f} "
                  f"over {usage.days_with_data} active days")

    daily = Table(title="Daily usage")
    daily.add_column("Date")
    daily.add_column("Credits", justify="right")
    for day in usage.daily:
        daily.add_row(day.date, f"{day.total_credits:,}")
    console.print(daily)

    for title, label, rows in (
        ("Usage by model", "Model", [(m.model_name, m.credits) for m in usage.by_model]),
        ("Usage by activity", "Activity", [(a.activity_type, a.credits) for a in usage.by_activity]),
    ):
        table = Table(title=title)
        table.add_column(label)
        table.add_column("Credits", justify="right")
        for name, credits in sorted(rows, key=lambda row: row[1], reverse=True):
            table.add_row(name, f"{credits:,}")
        console.print(table)


if __name__ == "__main__":
    app()
