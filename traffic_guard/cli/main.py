"""
CLI interface for Traffic Guard.

Provides command-line access to the traffic cache and API budget.
"""

import sys
from datetime import datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from traffic_guard.config.loader import TrafficGuardConfig, load_config, with_overrides
from traffic_guard.core.budget import BudgetCategory, BudgetLedger, is_off_peak
from traffic_guard.core.coordinator import TrafficCoordinator
from traffic_guard.core.errors import InvalidInput
from traffic_guard.core.multiplier import traffic_multiplier_for
from traffic_guard.provider.tomtom_client import TomTomTrafficClient
from traffic_guard.storage.repository import (
    TrafficCacheRepository,
    UsageRepository,
    initialize_schema,
)
from traffic_guard.utils.logging import configure_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None, "--db", help="SQLite database path (overrides configuration)"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
):
    """Traffic Guard CLI."""
    configure_logging(log_level, json_output=json_logs)
    try:
        config = load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = with_overrides(config, storage={"db_path": db_path})
    ctx.obj = config

    if ctx.invoked_subcommand is None:
        console.print("Traffic Guard - Use --help to see available commands")


def _build_provider(config: TrafficGuardConfig) -> TomTomTrafficClient:
    """Construct the provider client; fails when no API key is configured."""
    return TomTomTrafficClient(
        api_key=config.provider.api_key or "",
        timeout=config.provider.timeout_seconds,
    )


def _build_coordinator(config: TrafficGuardConfig) -> TrafficCoordinator:
    return TrafficCoordinator.from_config(config, provider=_build_provider(config))


def _parse_stop(text: str):
    try:
        lat, lon = (float(part) for part in text.split(","))
    except ValueError:
        raise InvalidInput(f"Stop must be given as LAT,LON: {text!r}")
    return lat, lon


@app.command()
def init(ctx: typer.Context):
    """Initialize the Traffic Guard database."""
    config: TrafficGuardConfig = ctx.obj
    try:
        initialize_schema(config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(ctx: typer.Context):
    """Show today's traffic API budget usage."""
    config: TrafficGuardConfig = ctx.obj
    ledger = BudgetLedger.from_config(config, UsageRepository(config.storage.db_path))

    result = ledger.stats_for_today()
    if result is None:
        console.print("[red]Usage statistics unavailable.[/] Run `traffic-guard init` first.")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Traffic API budget for {result.date}[/bold]")
    console.print(
        f"Used {result.total_used}/{result.daily_limit} ({result.percent_used:.1f}%), "
        f"{result.remaining} remaining, hourly limit {result.hourly_limit}"
    )

    table = Table("Category", "Used", "Limit")
    for category in BudgetCategory:
        table.add_row(
            category.value,
            str(result.per_category.get(category.value, 0)),
            str(ledger.category_limit(category)),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def traffic(
    ctx: typer.Context,
    stops: List[str] = typer.Argument(..., help="Route stops as LAT,LON"),
    category: BudgetCategory = typer.Option(
        BudgetCategory.ACTIVE, "--category", "-k", help="Budget category charged for fetches"
    ),
):
    """Look up traffic for a set of route stops, fetching within budget."""
    config: TrafficGuardConfig = ctx.obj
    try:
        coordinates = [_parse_stop(stop) for stop in stops]
        coordinator = _build_coordinator(config)
        result = coordinator.get_traffic_for_stops(coordinates, category)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_traffic_result(result)
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(ctx: typer.Context):
    """Remove expired traffic cache entries."""
    config: TrafficGuardConfig = ctx.obj
    removed = TrafficCacheRepository(config.storage.db_path).evict_expired()
    console.print(f"[green]✓[/] Removed {removed} expired cache entries")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def prefetch(
    ctx: typer.Context,
    cells: List[str] = typer.Argument(..., help="Grid cell ids to warm"),
    force: bool = typer.Option(False, "--force", help="Run outside off-peak hours"),
):
    """Warm the cache for popular grid cells (off-peak hours only)."""
    config: TrafficGuardConfig = ctx.obj
    hour = datetime.now().hour
    if not force and not is_off_peak(hour):
        console.print("[yellow]Prefetch should only run during off-peak hours (00:00-06:00)[/]")
        sys.exit(EXIT_CODE_FAIL)

    try:
        result = _build_coordinator(config).prefetch(cells)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Prefetched {result.cells_fetched} of {result.total_cells} cells "
        f"({result.total_cells - len(result.snapshots)} skipped by budget)"
    )
    sys.exit(EXIT_CODE_PASS)


def _display_traffic_result(result):
    """Display per-cell traffic with cache and budget status."""
    console.print("\n[bold]Traffic Lookup Result[/bold]")
    console.print("-" * 40)
    console.print(f"Cells: {result.total_cells}, fetched: {result.cells_fetched}, failed: {result.cells_failed}")
    console.print(f"Cache hit rate: {result.cache_hit_rate:.1f}%")
    if result.budget_exhausted and result.admission is not None:
        console.print(f"[yellow]Budget limited:[/] {result.admission.message}")

    table = Table("Cell", "Road type", "Multiplier", "Incidents", "Expires")
    for cell in result.cells:
        snapshot = result.snapshots.get(cell)
        if snapshot is None:
            table.add_row(cell, "-", "-", "-", "[dim]not fetched[/]")
        elif snapshot.error:
            table.add_row(cell, "-", "1.00", "-", f"[red]{snapshot.error}[/]")
        else:
            table.add_row(
                cell,
                snapshot.road_type.value,
                f"{traffic_multiplier_for(snapshot):.2f}",
                str(len(snapshot.incidents)),
                snapshot.expires_at.strftime("%H:%M:%S") if snapshot.expires_at else "-",
            )
    console.print(table)


if __name__ == "__main__":
    app()
