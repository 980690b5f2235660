"""
CLI interface for the AI Usage Gateway.

Operational commands for the usage ledger, cost alerts, quotas and the
response cache, plus one-off categorize/search calls through the gateway.
"""

import asyncio
import dataclasses
import sys
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_usage_gateway.config.loader import GatewayConfig, StorageConfig, load_gateway_config
from ai_usage_gateway.core.alerts import CostAlertMonitor
from ai_usage_gateway.core.cache import ResponseCache
from ai_usage_gateway.core.identity import normalize_user_id
from ai_usage_gateway.core.quota import QuotaManager
from ai_usage_gateway.core.usage import UsageTracker
from ai_usage_gateway.logging_config import configure_logging
from ai_usage_gateway.sdk.gateway import AIGateway
from ai_usage_gateway.storage.cache_store import SQLiteCacheStore
from ai_usage_gateway.storage.models import OperationType
from ai_usage_gateway.storage.repository import GatewayRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the gateway YAML configuration"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides storage.db_path)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logs"
    ),
):
    """AI Usage Gateway CLI."""
    configure_logging("DEBUG" if verbose else "WARNING")
    ctx.obj = {"config_path": config, "db_path": db}
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Gateway - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> GatewayConfig:
    options = ctx.obj or {}
    config = load_gateway_config(options.get("config_path"))
    if options.get("db_path"):
        config = dataclasses.replace(config, storage=StorageConfig(db_path=options["db_path"]))
    return config


def _repository(config: GatewayConfig) -> GatewayRepository:
    repository = GatewayRepository(config.storage.db_path)
    repository.initialize()
    return repository


def _quota_manager(config: GatewayConfig) -> QuotaManager:
    return QuotaManager(
        _repository(config),
        default_daily_limit=config.quota.daily_limit,
        timezone=config.quota.timezone,
    )


def _cache(config: GatewayConfig) -> ResponseCache:
    _repository(config)
    return ResponseCache(
        store=SQLiteCacheStore(config.storage.db_path),
        ttl_by_operation=config.cache.ttl_seconds,
        default_ttl=config.cache.default_ttl_seconds,
        min_confidence=config.cache.min_confidence,
        enabled=config.cache.enabled,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(ctx: typer.Context):
    """Initialize the gateway database."""
    try:
        config = _load_config(ctx)
        _repository(config)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    days: int = typer.Option(
        7,
        "--days",
        "-d",
        help="Number of calendar days to include (today included)"
    ),
):
    """Show token, cost and cache metrics from the usage ledger."""
    try:
        config = _load_config(ctx)
        tracker = UsageTracker(_repository(config), timezone=config.quota.timezone)
        metrics = tracker.get_all_metrics(days)
    except Exception as e:
        _fail(str(e))
        return

    _display_metrics(metrics)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def recent(
    ctx: typer.Context,
    operation: Optional[str] = typer.Option(None, "--operation", "-o", help="Only this operation type"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
):
    """Show the most recent usage ledger entries."""
    try:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if operation is not None:
            operation = OperationType(operation).value
        config = _load_config(ctx)
        entries = _repository(config).fetch_recent_usage(operation, normalize_user_id(user), limit)
    except Exception as e:
        _fail(str(e))
        return

    if not entries:
        console.print("[dim]No usage recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent usage")
    for column in ("Time", "User", "Operation", "Model", "Tokens", "Cost", "Cached"):
        table.add_column(column, justify="right" if column in ("Tokens", "Cost") else "left")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.user_id or "-",
            entry.operation_type,
            entry.model,
            f"{entry.total_tokens:,}",
            _format_currency(entry.cost),
            "yes" if entry.cache_hit else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def alerts(
    ctx: typer.Context,
    include_resolved: bool = typer.Option(False, "--all", help="Include resolved alerts"),
    resolve: Optional[int] = typer.Option(None, "--resolve", help="Mark the alert with this id resolved"),
):
    """List cost alerts, or resolve one."""
    try:
        config = _load_config(ctx)
        monitor = CostAlertMonitor(
            _repository(config),
            daily_warning=config.usage.alert_daily_warning,
            daily_critical=config.usage.alert_daily_critical,
            spike_threshold=config.usage.alert_spike,
            dedup_window_seconds=config.usage.alert_dedup_seconds,
            timezone=config.quota.timezone,
        )
        if resolve is not None:
            if not monitor.resolve_alert(resolve):
                raise ValueError(f"No open alert with id {resolve}")
            console.print(f"[green]✓[/] Alert {resolve} resolved")
            sys.exit(EXIT_CODE_PASS)
        found = monitor.get_alerts(include_resolved)
    except Exception as e:
        _fail(str(e))
        return

    if not found:
        console.print("[dim]No cost alerts.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Cost alerts")
    for column in ("Id", "Time", "Severity", "Type", "Message"):
        table.add_column(column)
    severity_styles = {"critical": "red", "warning": "yellow", "info": "cyan"}
    for alert in found:
        style = severity_styles[alert.severity.value]
        table.add_row(
            str(alert.id),
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
            f"[{style}]{alert.severity.value}[/]",
            alert.alert_type.value,
            alert.message + (" (resolved)" if alert.resolved else ""),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Show a user's daily interaction balance."""
    try:
        result = _quota_manager(_load_config(ctx)).get_balance(user)
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"\n[bold]User:[/bold] {result['user_id']}")
    console.print(f"Available today: {result['available']}/{result['daily_limit']}")
    console.print(f"Consumed today: {result['consumed_today']}")
    if result["granted_today"]:
        console.print(f"Granted today: {result['granted_today']}")
    console.print(f"Last reset: {result['last_reset']}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-limit")
def set_limit(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id"),
    limit: int = typer.Argument(..., help="New daily interaction limit"),
):
    """Override a user's daily interaction limit."""
    try:
        result = _quota_manager(_load_config(ctx)).set_daily_limit(user, limit)
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"[green]✓[/] Daily limit for {result['user_id']} set to {result['daily_limit']}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id"),
    amount: int = typer.Argument(..., help="Extra interactions for today"),
    admin: str = typer.Option(..., "--admin", "-a", help="Id of the admin granting the interactions"),
):
    """Grant a user extra interactions for today."""
    try:
        result = _quota_manager(_load_config(ctx)).assign_interactions(user, amount, admin)
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"[green]✓[/] {result['message']}. New balance: {result['new_balance']}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def settings(ctx: typer.Context):
    """Show global quota settings."""
    try:
        current = _quota_manager(_load_config(ctx)).get_settings()
    except Exception as e:
        _fail(str(e))
        return

    for key, value in sorted(current.items()):
        console.print(f"{key}: {value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-setting")
def set_setting(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Setting name"),
    value: str = typer.Argument(..., help="New value"),
    admin: str = typer.Option(..., "--admin", "-a", help="Id of the admin making the change"),
):
    """Change a global quota setting."""
    try:
        result = _quota_manager(_load_config(ctx)).update_setting(key, value, admin)
    except Exception as e:
        _fail(str(e))
        return

    setting = result["setting"]
    console.print(f"[green]✓[/] {setting['setting_key']} = {setting['setting_value']}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-quotas")
def reset_quotas(ctx: typer.Context):
    """Reset every user's daily counter now."""
    try:
        users_reset = _quota_manager(_load_config(ctx)).reset_daily_interactions()
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"[green]✓[/] Reset daily interactions for {users_reset} users")
    sys.exit(EXIT_CODE_PASS)


@app.command("cache-stats")
def cache_stats(ctx: typer.Context):
    """Show live entries in the persistent response cache."""
    try:
        result = _cache(_load_config(ctx)).get_cache_stats()
    except Exception as e:
        _fail(str(e))
        return

    table = Table(title="Response cache")
    table.add_column("Operation")
    table.add_column("Entries", justify="right")
    for operation, count in sorted(result["by_operation"].items()):
        table.add_row(operation, str(count))
    console.print(table)
    console.print(f"Cache enabled: {'yes' if result['enabled'] else 'no'}")
    console.print(f"Total entries: {result['entries']}")
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(ctx: typer.Context):
    """Drop every cached response."""
    try:
        removed = _cache(_load_config(ctx)).clear_cache()
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"[green]✓[/] Removed {removed} cache entries")
    sys.exit(EXIT_CODE_PASS)


@app.command("cleanup-cache")
def cleanup_cache(ctx: typer.Context):
    """Evict expired cached responses."""
    try:
        removed = _cache(_load_config(ctx)).cleanup_cache()
    except Exception as e:
        _fail(str(e))
        return

    console.print(f"[green]✓[/] Evicted {removed} expired cache entries")
    sys.exit(EXIT_CODE_PASS)


async def _call_gateway(config: GatewayConfig, method: str, *args: Any, **kwargs: Any) -> Dict[str, Any]:
    gateway = AIGateway.from_config(config)
    try:
        return await getattr(gateway, method)(*args, **kwargs)
    finally:
        await gateway.aclose()


@app.command()
def categorize(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t", help="Article title"),
    content: str = typer.Option(..., "--content", help="Article body"),
    url: str = typer.Option("", "--url", help="Article URL"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id to bill"),
):
    """Categorize one article through the gateway."""
    try:
        config = _load_config(ctx)
        result = asyncio.run(_call_gateway(config, "categorize", title, content, url, user_id=user))
    except Exception as e:
        _fail(str(e))
        return

    console.print_json(data=result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Free-text news search"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id to bill"),
):
    """Interpret a news search query through the gateway."""
    try:
        config = _load_config(ctx)
        result = asyncio.run(_call_gateway(config, "search", query, user_id=user))
    except Exception as e:
        _fail(str(e))
        return

    console.print_json(data=result)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency; AI calls cost fractions of a cent."""
    return f"${amount:,.6f}"


def _display_metrics(metrics: Dict[str, Any]) -> None:
    """Display usage metrics in a compact financial format."""
    totals = metrics["totals"]
    console.print(f"\n[bold]AI Usage - last {metrics['period_days']} days[/bold]")
    console.print("-" * 40)

    if not totals["total_operations"]:
        console.print("\n[dim]No usage recorded in this period.[/]")
        return

    console.print(f"Operations: {totals['total_operations']}")
    console.print(f"Tokens: {totals['total_tokens']:,}")
    console.print(f"Cost: {_format_currency(totals['total_cost'])}")
    console.print(f"Cache hit rate: {totals['cache_hit_rate']:.1f}%")

    daily = Table(title="Daily")
    for column in ("Date", "Operations", "Tokens", "Cost"):
        daily.add_column(column, justify="left" if column == "Date" else "right")
    for day in metrics["daily"]:
        daily.add_row(
            day["date"],
            str(day["total_operations"]),
            f"{day['total_tokens']:,}",
            _format_currency(day["total_cost"]),
        )
    console.print(daily)

    by_operation = Table(title="By operation")
    for column in ("Operation", "Operations", "Tokens", "Cost"):
        by_operation.add_column(column, justify="left" if column == "Operation" else "right")
    for operation, bucket in sorted(metrics["by_operation"].items()):
        by_operation.add_row(
            operation,
            str(bucket["operations"]),
            f"{bucket['tokens']:,}",
            _format_currency(bucket["cost"]),
        )
    console.print(by_operation)


if __name__ == "__main__":
    app()
