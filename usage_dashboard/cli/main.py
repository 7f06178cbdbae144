"""
CLI interface for the usage dashboard.

Provides command-line access to the usage reports.
"""

import asyncio
import json
import logging
import sys
from datetime import timezone
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_dashboard.config.loader import DashboardConfig, load_dashboard_config
from usage_dashboard.core.pricing import get_all_pricing_rates, resolve_pricing
from usage_dashboard.core.service import ReportResult, UsageReportService
from usage_dashboard.core.views import SortOrder

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(level: str) -> None:
    package_logger = logging.getLogger("usage_dashboard")
    package_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))
    package_logger.handlers = [RichHandler(console=err_console, show_path=False)]


def _get_service(ctx: typer.Context) -> UsageReportService:
    config: DashboardConfig = ctx.obj["config"]
    return UsageReportService(config)


def _finish(result: ReportResult, as_json: bool, render) -> None:
    """Print a result (or its error) and exit with the matching code."""
    if not result.ok:
        if as_json:
            console.print_json(json.dumps({"data": result.data, "error": result.error.to_dict()}))
        else:
            console.print(f"[red]Error ({result.error.code.value}):[/] {result.error.message}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(result.data, default=str))
    else:
        render(result.data)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: Any) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.2f}"


def _format_tokens(value: int) -> str:
    return f"{value:,}"


def _usage_table(title: str, key_label: str, key: str, rows: List[Dict[str, Any]], messages: bool) -> Table:
    table = Table(title=title)
    table.add_column(key_label)
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cache Write", justify="right")
    table.add_column("Cache Read", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Sessions", justify="right")
    if messages:
        table.add_column("Messages", justify="right")
    for row in rows:
        cells = [
            str(row[key]),
            _format_tokens(row["newInputTokens"]),
            _format_tokens(row["outputTokens"]),
            _format_tokens(row["cacheCreationTokens"]),
            _format_tokens(row["cacheReadTokens"]),
            _format_tokens(row["totalTokens"]),
            _format_currency(row["cost"]),
            str(row["sessions"]),
        ]
        if messages:
            cells.append(str(row["messages"]))
        table.add_row(*cells)
    return table


def _print_rows(title: str, key_label: str, key: str, messages: bool = True):
    def render(rows: List[Dict[str, Any]]) -> None:
        if not rows:
            console.print("\n[dim]No usage data found.[/]")
            return
        console.print(_usage_table(title, key_label, key, rows, messages))
    return render


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level written to stderr"
    ),
):
    """Usage Dashboard CLI."""
    _configure_logging(log_level)
    try:
        config = load_dashboard_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Usage Dashboard - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show the resolved configuration."""
    config: DashboardConfig = ctx.obj["config"]
    processor = config.external_processor
    root = config.projects_root
    marker = "[green]✓[/]" if root.is_dir() else "[red]✗[/]"
    console.print(f"{marker} Projects directory: {root}")
    console.print(f"Cache: {config.cache.policy.value}, TTL {config.cache.ttl_seconds:g}s")
    if processor.active:
        console.print(f"External processor: {processor.path} (timeout {processor.timeout_seconds:g}s)")
    else:
        console.print("External processor: [dim]disabled[/]")


@app.command()
def report(ctx: typer.Context):
    """Print the full aggregate report as JSON."""
    result = asyncio.run(_get_service(ctx).get_report())
    _finish(result, True, None)


@app.command()
def daily(
    ctx: typer.Context,
    start_date: Optional[str] = typer.Option(None, "--start-date", help="First day (YYYY-MM-DD)"),
    end_date: Optional[str] = typer.Option(None, "--end-date", help="Last day (YYYY-MM-DD)"),
    start_hour: Optional[int] = typer.Option(None, "--start-hour", min=0, max=23, help="First hour of day"),
    end_hour: Optional[int] = typer.Option(None, "--end-hour", min=0, max=23, help="Last hour of day"),
    utc: bool = typer.Option(False, "--utc", help="Read hours in UTC instead of local time"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Daily usage, optionally restricted to an hour-of-day window."""
    result = asyncio.run(_get_service(ctx).get_daily_usage(
        start_date=start_date,
        end_date=end_date,
        start_hour=start_hour,
        end_hour=end_hour,
        tz=timezone.utc if utc else None,
    ))
    _finish(result, as_json, _print_rows("Daily Usage", "Date", "date", messages=False))


@app.command()
def monthly(
    ctx: typer.Context,
    year: Optional[int] = typer.Option(None, "--year", help="Only months of this year"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Monthly usage."""
    result = asyncio.run(_get_service(ctx).get_monthly_usage(year=year))
    _finish(result, as_json, _print_rows("Monthly Usage", "Month", "month"))


@app.command()
def models(
    ctx: typer.Context,
    sort_by: str = typer.Option("totalTokens", "--sort-by", help="totalTokens, cost, messages, sessions or model"),
    ascending: bool = typer.Option(False, "--asc", help="Sort ascending"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Usage per model."""
    order = SortOrder.ASC if ascending else SortOrder.DESC
    result = asyncio.run(_get_service(ctx).get_model_usage(sort_by=sort_by, order=order))

    def render(data: Dict[str, Any]) -> None:
        _print_rows("Model Usage", "Model", "model")(data["data"])
        stats = data["stats"]
        console.print(f"\nModels: {stats['totalModels']}  Total cost: {_format_currency(stats['totalCost'])}")

    _finish(result, as_json, render)


@app.command()
def projects(
    ctx: typer.Context,
    sort_by: str = typer.Option("lastActivity", "--sort-by", help="lastActivity, totalCost, totalTokens, name or messageCount"),
    ascending: bool = typer.Option(False, "--asc", help="Sort ascending"),
    min_cost: float = typer.Option(0.0, "--min-cost", help="Hide projects cheaper than this"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Project name filter"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Usage per project."""
    order = SortOrder.ASC if ascending else SortOrder.DESC
    result = asyncio.run(_get_service(ctx).get_projects(
        sort_by=sort_by, order=order, min_cost=min_cost, search=search,
    ))

    def render(data: Dict[str, Any]) -> None:
        rows = data["data"]
        if not rows:
            console.print("\n[dim]No projects found.[/]")
            return
        table = Table(title="Projects")
        table.add_column("Project")
        table.add_column("Total Tokens", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Messages", justify="right")
        table.add_column("Last Activity")
        for row in rows:
            table.add_row(
                row["name"],
                _format_tokens(row["totalTokens"]),
                _format_currency(row["totalCost"]),
                str(row["messageCount"]),
                row["lastActivity"] or "-",
            )
        console.print(table)
        stats = data["stats"]
        console.print(
            f"\nProjects: {stats['totalProjects']} ({stats['activeProjects']} active in 30 days)"
            f"  Total cost: {_format_currency(stats['totalCost'])}"
        )

    _finish(result, as_json, render)


@app.command()
def hourly(
    ctx: typer.Context,
    date: Optional[str] = typer.Option(None, "--date", help="Single day (YYYY-MM-DD)"),
    start_date: Optional[str] = typer.Option(None, "--start-date", help="First day (YYYY-MM-DD)"),
    end_date: Optional[str] = typer.Option(None, "--end-date", help="Last day (YYYY-MM-DD)"),
    utc: bool = typer.Option(False, "--utc", help="Read hours in UTC instead of local time"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Usage by hour of day."""
    result = asyncio.run(_get_service(ctx).get_hourly_usage(
        date=date, start_date=start_date, end_date=end_date, tz=timezone.utc if utc else None,
    ))

    def render(data: Dict[str, Any]) -> None:
        rows = data["hourlyData"]
        if not rows:
            console.print("\n[dim]No usage data found.[/]")
            return
        table = Table(title="Hourly Usage")
        table.add_column("Hour", justify="right")
        table.add_column("Requests", justify="right")
        table.add_column("Total Tokens", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Avg Cost/Request", justify="right")
        for row in rows:
            table.add_row(
                f"{row['hour']:02d}:00",
                str(row["requests"]),
                _format_tokens(row["totalTokens"]),
                _format_currency(row["cost"]),
                f"${row['avgCostPerRequest']:,.4f}",
            )
        console.print(table)
        stats = data["statistics"]
        peak = stats["peakCostHour"]
        console.print(f"\nPeak cost hour: {peak['hour']:02d}:00 ({peak['percentage']:.1f}% of cost)")

    _finish(result, as_json, render)


@app.command()
def summary(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Headline totals."""
    result = asyncio.run(_get_service(ctx).get_summary())

    def render(data: Dict[str, Any]) -> None:
        console.print("\n[bold]Usage Summary[/bold]")
        console.print("-" * 40)
        console.print(f"Total tokens: {_format_tokens(data['totalTokens'])}")
        console.print(f"Total cost: {_format_currency(data['totalCost'])}")
        console.print(f"Sessions: {data['totalSessions']}")
        console.print(f"Messages: {data['totalMessages']}")
        console.print(f"Projects: {data['totalProjects']}")
        console.print(f"Active days: {data['activeDays']}")
        console.print(f"Last activity: {data['lastActivity'] or '-'}")

    _finish(result, as_json, render)


@app.command()
def pricing(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Show which rate a model name resolves to"),
):
    """List the pricing catalogue (USD per million tokens)."""
    if model:
        resolved = resolve_pricing(model)
        console.print(f"{model} -> {resolved.model} ({resolved.family})")
        console.print(f"Input: ${resolved.input_rate_per_token * 1_000_000:,.2f} / M tokens")
        console.print(f"Output: ${resolved.output_rate_per_token * 1_000_000:,.2f} / M tokens")
        return

    table = Table(title="Pricing")
    table.add_column("Model")
    table.add_column("Family")
    table.add_column("Released")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for model, rate in get_all_pricing_rates().items():
        table.add_row(
            model,
            rate["family"],
            rate["released"],
            f"${rate['input_per_million']}",
            f"${rate['output_per_million']}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
