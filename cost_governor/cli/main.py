"""
CLI interface for Cost Governor.

Provides command-line access to budgets, the circuit breaker, reports,
alert channels, pricing and licensing.
"""

import logging
import sys
from dataclasses import replace
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from cost_governor.config.loader import GovernorConfig, load_config
from cost_governor.core.governor import CostGovernor, LicenseRequiredError, bootstrap_ledger
from cost_governor.core.monitor import Classification
from cost_governor.storage.models import ModelPricing
from cost_governor.storage.repository import LedgerRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATUS_STYLES = {
    Classification.SAFE: "[green]✓[/]",
    Classification.WARNING: "[yellow]![/]",
    Classification.CRITICAL: "[red]![/]",
    Classification.EXCEEDED: "[bold red]✗[/]",
}


def _config(ctx: typer.Context) -> GovernorConfig:
    return ctx.obj["config"]


def _governor(ctx: typer.Context) -> CostGovernor:
    return CostGovernor.from_config(_config(ctx))


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Override the ledger database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Cost Governor CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        config = replace(config, database=db)
    ctx.obj = {"config": config}

    if ctx.invoked_subcommand is None:
        console.print("Cost Governor - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database and apply the configured budget."""
    try:
        config = _config(ctx)
        repository = bootstrap_ledger(config)
        repository.update_budget(config.budget)
        console.print(f"[green]✓[/] Database initialized at {config.database}")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show budget tiers, breaker state and today's top spenders."""
    governor = _governor(ctx)
    current = governor.get_status()

    table = Table(title="Budget Status")
    table.add_column("")
    table.add_column("Tier")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("%", justify="right")
    table.add_column("Status")
    for tier in current.evaluation.tiers.values():
        table.add_row(
            _STATUS_STYLES[tier.classification],
            tier.tier.capitalize(),
            _format_currency(tier.used),
            _format_currency(tier.limit),
            f"{tier.percent_used}%",
            tier.classification.value,
        )
    console.print(table)

    breaker = current.breaker
    if breaker.tripped:
        console.print("\n[bold red]Circuit Breaker: TRIPPED[/]")
        if breaker.last_event:
            console.print(f"   Reason: {breaker.last_event.reason}")
            console.print(f"   Time: {breaker.last_event.timestamp:%Y-%m-%d %H:%M:%S}")
    else:
        console.print("\n[green]Circuit Breaker: ARMED[/]")

    if current.summary.providers:
        console.print("\n[bold]Top Providers (today)[/bold]")
        for p in current.summary.providers[:3]:
            console.print(
                f"   {p.key}/{p.model}: {_format_currency(p.total_cost)} ({p.request_count} requests)"
            )

    if current.summary.top_agents:
        console.print("\n[bold]Top Agents (today)[/bold]")
        for a in current.summary.top_agents[:3]:
            console.print(f"   {a.key}: {_format_currency(a.total_cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(ctx: typer.Context):
    """Reset the circuit breaker and re-enable paused providers."""
    result = _governor(ctx).reset_breaker()
    if result.success:
        console.print("[green]✓[/] Circuit breaker reset successfully")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Failed to reset:[/] {result.error or result.message}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def report(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", "-d", help="Number of days to report on"),
    wallet: Optional[str] = typer.Option(
        None, "--wallet", "-w", help="Agent wallet holding a license for extended history"
    ),
):
    """Generate a cost report for the last N days."""
    try:
        data = _governor(ctx).get_report(days, wallet)
    except (LicenseRequiredError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Cost Report - Last {days} days[/bold]")
    console.print("-" * 40)
    console.print(f"Total Cost: {_format_currency(data.total_cost)}")
    console.print(f"Total Requests: {data.request_count}")
    console.print(f"Average per request: ${data.average_cost:.4f}")

    if data.providers:
        table = Table(title="Breakdown by Provider")
        table.add_column("Provider/Model")
        table.add_column("Requests", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Avg/request", justify="right")
        for p in data.providers:
            table.add_row(
                f"{p.key}/{p.model}",
                str(p.request_count),
                _format_currency(p.total_cost),
                f"${p.total_cost / p.request_count:.4f}",
            )
        console.print(table)

    if data.top_agents:
        console.print("\n[bold]Top Agents[/bold]")
        for i, a in enumerate(data.top_agents, start=1):
            console.print(
                f"  {i}. {a.key}: {_format_currency(a.total_cost)} ({a.request_count} requests)"
            )
    sys.exit(EXIT_CODE_PASS)


@app.command("set-budget")
def set_budget(
    ctx: typer.Context,
    daily: Optional[float] = typer.Option(None, "--daily", help="Daily limit"),
    weekly: Optional[float] = typer.Option(None, "--weekly", help="Weekly limit"),
    monthly: Optional[float] = typer.Option(None, "--monthly", help="Monthly limit"),
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", help="Alert threshold percent"
    ),
    breaker: Optional[bool] = typer.Option(
        None, "--breaker/--no-breaker", help="Enable or disable the circuit breaker"
    ),
):
    """Update budget limits; unspecified values are kept."""
    changes = {
        key: value
        for key, value in {
            "daily_limit": daily,
            "weekly_limit": weekly,
            "monthly_limit": monthly,
            "alert_threshold_percent": threshold,
            "circuit_breaker_enabled": breaker,
        }.items()
        if value is not None
    }
    try:
        budget = _governor(ctx).update_budget(**changes)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Budget: daily {_format_currency(budget.daily_limit)}, "
        f"weekly {_format_currency(budget.weekly_limit)}, "
        f"monthly {_format_currency(budget.monthly_limit)}, "
        f"alert at {budget.alert_threshold_percent}%, "
        f"breaker {'on' if budget.circuit_breaker_enabled else 'off'}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("add-channel")
def add_channel(
    ctx: typer.Context,
    channel_type: str = typer.Argument(..., help="console, webhook or discord"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Endpoint URL"),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra header as KEY=VALUE"),
):
    """Register an alert channel."""
    if channel_type not in ("console", "webhook", "discord"):
        console.print(f"[red]Error:[/] unknown channel type {channel_type}")
        sys.exit(EXIT_CODE_FAIL)
    if channel_type != "console" and not url:
        console.print("[red]Error:[/] --url is required for this channel type")
        sys.exit(EXIT_CODE_FAIL)

    headers = {}
    for item in header:
        key, sep, value = item.partition("=")
        if not sep:
            console.print(f"[red]Error:[/] invalid header {item!r}, expected KEY=VALUE")
            sys.exit(EXIT_CODE_FAIL)
        headers[key.strip()] = value.strip()

    settings = {}
    if url:
        settings["url"] = url
    if headers:
        settings["headers"] = headers
    repository = bootstrap_ledger(_config(ctx))
    channel = repository.add_alert_channel(channel_type, settings)
    console.print(f"[green]✓[/] Added {channel.type} channel #{channel.id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def channels(ctx: typer.Context):
    """List registered alert channels."""
    repository = bootstrap_ledger(_config(ctx))
    table = Table(title="Alert Channels")
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Enabled")
    for channel in repository.get_alert_channels(enabled_only=False):
        target = channel.config.get("url") or channel.config.get("webhook_url") or "-"
        table.add_row(str(channel.id), channel.type, target, "yes" if channel.enabled else "no")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("set-pricing")
def set_pricing(
    ctx: typer.Context,
    provider: str = typer.Argument(...),
    model: str = typer.Argument(...),
    prompt_per_1k: float = typer.Argument(..., help="Cost per 1K prompt tokens"),
    completion_per_1k: float = typer.Argument(..., help="Cost per 1K completion tokens"),
):
    """Set unit prices for a provider model."""
    if prompt_per_1k < 0 or completion_per_1k < 0:
        console.print("[red]Error:[/] prices cannot be negative")
        sys.exit(EXIT_CODE_FAIL)
    repository = bootstrap_ledger(_config(ctx))
    repository.upsert_pricing(ModelPricing(provider, model, prompt_per_1k, completion_per_1k))
    console.print(f"[green]✓[/] Pricing updated for {provider}/{model}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pricing(ctx: typer.Context):
    """List the pricing table."""
    repository: LedgerRepository = bootstrap_ledger(_config(ctx))
    table = Table(title="Pricing (per 1K tokens)")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    for row in repository.list_pricing():
        table.add_row(
            row.provider, row.model,
            f"${row.prompt_cost_per_1k:.5f}", f"${row.completion_cost_per_1k:.5f}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(ctx: typer.Context):
    """Send today's cost summary to every alert channel."""
    result = _governor(ctx).send_daily_summary()
    if not result.sent:
        console.print(f"[yellow]Summary not sent:[/] {result.reason}")
        sys.exit(EXIT_CODE_PASS)
    for channel in result.results:
        mark = "[green]✓[/]" if channel.success else "[red]✗[/]"
        suffix = f" ({channel.error})" if channel.error else ""
        console.print(f"{mark} {channel.channel}{suffix}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pay(
    ctx: typer.Context,
    wallet: str = typer.Argument(..., help="Agent wallet address"),
    tier: str = typer.Option("pro_monthly", "--tier", help="Subscription tier"),
):
    """Issue a payment request for a subscription tier."""
    result = _governor(ctx).create_payment_request(wallet, tier)
    console.print_json(data=result)
    sys.exit(EXIT_CODE_PASS if result["success"] else EXIT_CODE_FAIL)


@app.command()
def verify(
    ctx: typer.Context,
    request_id: str = typer.Argument(...),
    settlement_ref: str = typer.Argument(..., help="Transaction hash of the payment"),
    wallet: str = typer.Argument(...),
):
    """Verify a payment and grant the license it pays for."""
    result = _governor(ctx).verify_payment(request_id, settlement_ref, wallet)
    console.print_json(data=result)
    sys.exit(EXIT_CODE_PASS if result["success"] else EXIT_CODE_FAIL)


@app.command("license")
def license_status(ctx: typer.Context, wallet: str = typer.Argument(...)):
    """Show the license status of a wallet."""
    console.print_json(data=_governor(ctx).check_license(wallet).to_dict())
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
