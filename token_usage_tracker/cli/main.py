"""
CLI interface for the Token Usage Tracker.

Provides command-line access to recorded usage, prices and data transfer.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from token_usage_tracker.config.loader import TrackerConfig, default_config, load_tracker_config
from token_usage_tracker.core.catalog import PriceCatalogClient
from token_usage_tracker.core.clock import TimeSource
from token_usage_tracker.core.health import HealthMonitor
from token_usage_tracker.core.pricing import PriceResolver
from token_usage_tracker.core.transfer import ImportExportMerger, UsageImportError
from token_usage_tracker.storage.models import UsageBucket
from token_usage_tracker.storage.repository import SettingsRepository, SettingsStore
from token_usage_tracker.storage.usage_store import MergeStrategy, UsageStore, efficiency_metrics

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class Services:
    """Components needed by the commands, built from one configuration."""
    config: TrackerConfig
    time_source: TimeSource
    settings_store: SettingsStore
    health: HealthMonitor
    usage: UsageStore
    prices: PriceResolver
    transfer: ImportExportMerger


def setup_logging(verbose: bool = False, debug: bool = False):
    """Configure logging for the CLI."""
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
        force=True,
    )


def build_services(config: TrackerConfig, db_path: Optional[str] = None) -> Services:
    # One-shot commands never run an event loop long enough to resync.
    time_source = TimeSource(timezone=config.timezone, sync_enabled=False)
    settings_store = SettingsStore(SettingsRepository(db_path or config.storage.db_path))
    health = HealthMonitor(time_source, tokenizer_available=False)
    usage = UsageStore(settings_store, time_source, health)
    catalog_client = PriceCatalogClient(config.catalog.url) if config.catalog.enabled else None
    prices = PriceResolver(
        settings_store,
        time_source,
        catalog_client=catalog_client,
        health=health,
        provider=config.catalog.provider,
        refresh_hours=config.catalog.refresh_hours,
    )
    transfer = ImportExportMerger(settings_store, usage, time_source)
    return Services(config, time_source, settings_store, health, usage, prices, transfer)


def _services(ctx: typer.Context) -> Services:
    return ctx.obj


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the settings database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show info logs"),
    debug: bool = typer.Option(False, "--debug", help="Show debug logs"),
):
    """Token Usage Tracker CLI."""
    setup_logging(verbose, debug)
    try:
        tracker_config = load_tracker_config(str(config)) if config else default_config()
        ctx.obj = build_services(tracker_config, db_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("Token Usage Tracker - Use --help to see available commands")


def _format_number(count: int) -> str:
    return f"{count:,}"


def _format_tokens(count: int) -> str:
    """Format token count with K/M suffix."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1000:
        return f"{count / 1000:.1f}K"
    return str(count)


def _bucket_row(table: Table, label: str, bucket: UsageBucket) -> None:
    table.add_row(
        label,
        _format_number(bucket.input),
        _format_number(bucket.output),
        _format_number(bucket.reasoning),
        _format_number(bucket.total),
        _format_number(bucket.message_count),
    )


def _print_bucket_detail(title: str, bucket: UsageBucket) -> None:
    ratio, per_message = efficiency_metrics(bucket)
    console.print(f"\n[bold]{title}[/bold]")
    console.print(f"Total: {_format_number(bucket.total)} tokens")
    console.print(f"Input: {_format_number(bucket.input)} tokens")
    console.print(f"Output: {_format_number(bucket.output)} tokens")
    console.print(f"Messages: {bucket.message_count}")
    console.print(f"Efficiency: {ratio:.2f}x out/in, {_format_tokens(per_message)}/msg")


@app.command()
def stats(ctx: typer.Context):
    """Display token usage across time periods."""
    snapshot = _services(ctx).usage.get_stats()

    table = Table(title="Token Usage")
    for column in ("Period", "Input", "Output", "Reasoning", "Total", "Messages"):
        table.add_column(column, justify="left" if column == "Period" else "right")
    _bucket_row(table, "Session", snapshot.session)
    _bucket_row(table, "Today", snapshot.today)
    _bucket_row(table, "This Hour", snapshot.this_hour)
    _bucket_row(table, "This Week", snapshot.this_week)
    _bucket_row(table, "This Month", snapshot.this_month)
    _bucket_row(table, "All Time", snapshot.all_time)
    console.print(table)


@app.command()
def today(ctx: typer.Context):
    """Display today's token usage with efficiency metrics."""
    _print_bucket_detail("Today's Token Usage", _services(ctx).usage.get_stats().today)


@app.command()
def chat(ctx: typer.Context, chat_id: str = typer.Argument(..., help="Chat identifier")):
    """Display token usage for one chat."""
    services = _services(ctx)
    if chat_id not in services.usage.get_stats().by_chat:
        console.print(f"[yellow]No usage recorded for chat:[/] {chat_id}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"Chat ID: {chat_id}")
    _print_bucket_detail("Chat Usage", services.usage.get_chat_usage(chat_id))


@app.command()
def cost(ctx: typer.Context):
    """Display estimated cost breakdown by model."""
    services = _services(ctx)
    by_model = services.usage.get_stats().by_model
    breakdown = services.prices.cost_breakdown()

    priced = {model_id: amount for model_id, amount in breakdown.items() if amount > 0}
    if not priced:
        console.print("No cost data available. Set model prices with `token-usage price`.")
        sys.exit(EXIT_CODE_PASS)

    console.print("\n[bold]Cost Breakdown by Model:[/bold]")
    for model_id, amount in priced.items():
        bucket = by_model[model_id]
        console.print(
            f"• {model_id}: ${amount:.4f} "
            f"({_format_number(bucket.input)} in, {_format_number(bucket.output)} out)"
        )
    console.print(f"[bold]Total: ${sum(priced.values()):.2f}[/bold]")


@app.command()
def reset(
    ctx: typer.Context,
    all_data: bool = typer.Option(False, "--all", help="Reset all usage data, not just the session"),
):
    """Reset session usage, or everything with --all."""
    services = _services(ctx)
    if all_data:
        services.usage.reset_all()
        console.print("[green]✓[/] All token usage data has been reset.")
    else:
        services.usage.reset_session()
        console.print("[green]✓[/] Session token usage has been reset.")


@app.command()
def export(
    ctx: typer.Context,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the export to this file"),
):
    """Export all token usage data as JSON."""
    services = _services(ctx)
    document = services.transfer.export_json()
    if output is None:
        print(document)
        return
    try:
        output.write_text(document, encoding="utf-8")
    except OSError as e:
        console.print(f"[red]Export failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Token usage data exported to {output}")


@app.command("import")
def import_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="JSON file produced by `token-usage export`"),
    strategy: Optional[MergeStrategy] = typer.Option(
        None,
        "--strategy",
        "-s",
        help="How colliding buckets combine (defaults to the configured strategy)",
    ),
):
    """Import token usage data from a JSON export."""
    services = _services(ctx)
    try:
        payload = file.read_text(encoding="utf-8")
        result = services.transfer.import_data(payload, strategy or services.config.import_.strategy)
    except (OSError, UsageImportError) as e:
        console.print(f"[red]Import failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {result.message}")


@app.command()
def price(
    ctx: typer.Context,
    model_id: str = typer.Argument(..., help="Model identifier"),
    price_in: str = typer.Argument(..., help="Input price per 1M tokens"),
    price_out: str = typer.Argument(..., help="Output price per 1M tokens"),
):
    """Set a model's price per million tokens."""
    model_price = _services(ctx).prices.set_price(model_id, price_in, price_out)
    console.print(
        f"[green]✓[/] {model_id}: ${model_price.input_per_million} in / "
        f"${model_price.output_per_million} out per 1M tokens"
    )


@app.command("refresh-prices")
def refresh_prices(
    ctx: typer.Context,
    source: Optional[str] = typer.Option(
        None,
        "--source",
        help="Only refresh if this source uses the catalog and the cache is stale",
    ),
):
    """Fetch model prices from the remote catalog."""
    services = _services(ctx)
    if services.prices.catalog_client is None:
        console.print("[yellow]Price catalog is disabled in configuration[/]")
        sys.exit(EXIT_CODE_PASS)

    if source is None:
        refreshed = asyncio.run(services.prices.refresh_catalog())
    else:
        refreshed = asyncio.run(services.prices.maybe_refresh_catalog(source))

    if refreshed:
        count = len(services.settings_store.settings.catalog_prices)
        console.print(f"[green]✓[/] Fetched prices for {count} models")
    elif source is not None and services.health.last_error_message is None:
        console.print("Price catalog is up to date or not used by this source")
    else:
        console.print(f"[red]Price refresh failed:[/] {services.health.last_error_message}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def summary(ctx: typer.Context):
    """Display recorded exchange counts and price catalog age."""
    services = _services(ctx)
    all_time = services.usage.get_stats().all_time
    last_fetched = services.settings_store.settings.catalog_last_fetched

    console.print(f"Recorded exchanges: {_format_number(all_time.message_count)}")
    console.print(f"All time: {_format_number(all_time.total)} tokens")
    console.print(f"Price catalog: {len(services.settings_store.settings.catalog_prices)} models, "
                  f"last fetched {last_fetched or 'never'}")
    console.print(f"Timezone: {services.config.timezone}")


if __name__ == "__main__":
    app()
