"""
CLI interface for AI Content Guard.

Provides command-line access to usage reports, the job queue, deferred
requests and the response caches.
"""

import asyncio
import sys
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_content_guard.config.loader import AppConfig, default_config, load_config
from ai_content_guard.context import AppContext
from ai_content_guard.core.errors import ContentGuardError, StorageUnavailable
from ai_content_guard.logging_config import setup_logging
from ai_content_guard.storage.db import initialize_schema
from ai_content_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DatabaseOption = typer.Option(None, "--db", help="Override the database path")


def _load(config_path: Optional[str], db: Optional[str]) -> AppConfig:
    config = load_config(config_path) if config_path else default_config()
    if db:
        config = replace(config, database=db)
    return config


def _context(config_path: Optional[str], db: Optional[str]) -> AppContext:
    try:
        return AppContext.from_config(_load(config_path, db))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _run(context: AppContext, coro):
    """Run a coroutine, then close the context.

    A missing database becomes a friendly exit.
    """

    async def run():
        try:
            return await coro
        finally:
            await context.close()

    try:
        return asyncio.run(run())
    except StorageUnavailable as e:
        console.print(f"[yellow]![/] Database not initialized: {str(e)}")
        console.print("Run `ai-content-guard init` to create it")
        sys.exit(EXIT_CODE_FAIL)


def _close(context: AppContext) -> None:
    asyncio.run(context.close())


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Content Guard CLI."""
    setup_logging("DEBUG" if verbose else "WARNING", console=Console(stderr=True))
    if ctx.invoked_subcommand is None:
        console.print("AI Content Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Initialize the AI Content Guard database."""
    try:
        settings = _load(config, db)
        initialize_schema(settings.database)
        console.print(f"[green]✓[/] Database initialized successfully ({settings.database})")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Check initialization status and show configured providers."""
    context = _context(config, db)
    try:
        _print_status(context)
    finally:
        _close(context)


def _print_status(context: AppContext) -> None:
    try:
        UsageRepository(context.config.database).check_schema()
    except StorageUnavailable as e:
        console.print(f"[yellow]![/] Database not initialized: {str(e)}")
        console.print("Run `ai-content-guard init` to create it")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] AI Content Guard is initialized")
    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Kind")
    table.add_column("Daily limit", justify="right")
    table.add_column("Monthly limit", justify="right")
    table.add_column("Requests/day", justify="right")
    for provider in context.config.providers.values():
        table.add_row(
            provider.name,
            provider.kind.value,
            _format_currency(provider.daily_limit),
            _format_currency(provider.monthly_limit) if provider.monthly_limit else "-",
            str(provider.request_limit or "-"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Show today's and this month's usage per provider."""
    context = _context(config, db)
    stats = _run(context, context.governor.get_all_usage_stats())
    limits = context.governor.get_limits()

    table = Table(title="Provider usage")
    table.add_column("Provider")
    table.add_column("Today", justify="right")
    table.add_column("Daily limit", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens/chars", justify="right")
    table.add_column("This month", justify="right")
    for name, periods in stats.items():
        daily = periods["daily"]
        table.add_row(
            name,
            _format_currency(daily.cost),
            _format_currency(limits[name].daily_limit),
            str(daily.requests),
            str(daily.tokens),
            _format_currency(periods["monthly"].cost),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def breakdown(
    days: int = typer.Option(30, "--days", "-d", help="Number of days to include"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DatabaseOption,
):
    """Show spend by provider, method and day."""
    context = _context(config, db)
    try:
        report = _run(context, context.governor.get_cost_breakdown(days))
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not report["by_provider"]:
        console.print(f"\n[bold yellow]No usage recorded in the last {days} days[/]\n")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Total cost (last {days} days):[/bold] {_format_currency(report['total_cost'])}")
    for title, data in (("By provider", report["by_provider"]), ("By method", report["by_method"])):
        table = Table(title=title)
        table.add_column("Name")
        table.add_column("Cost", justify="right")
        for name, cost in sorted(data.items(), key=lambda kv: kv[1], reverse=True):
            table.add_row(name, _format_currency(cost))
        console.print(table)

    trend = Table(title="Daily trend")
    trend.add_column("Date")
    trend.add_column("Cost", justify="right")
    for day, cost in report["daily_trend"]:
        trend.add_row(day, _format_currency(cost))
    console.print(trend)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def drain(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Process pending generation jobs until none are left."""
    context = _context(config, db)
    if context.jobs is None:
        _close(context)
        console.print("[red]Error:[/] no LLM provider configured")
        sys.exit(EXIT_CODE_FAIL)

    async def run() -> int:
        try:
            await context.jobs.cleanup_failed_jobs()
            return await context.jobs.process()
        finally:
            await context.close()

    try:
        processed = asyncio.run(run())
    except ContentGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Processed {processed} jobs")
    sys.exit(EXIT_CODE_PASS)


@app.command("retry-failed")
def retry_failed(
    fingerprint: str = typer.Argument(..., help="Content fingerprint of the failed job"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DatabaseOption,
):
    """Re-queue the failed job for a piece of content."""
    context = _context(config, db)
    if context.jobs is None:
        _close(context)
        console.print("[red]Error:[/] no LLM provider configured")
        sys.exit(EXIT_CODE_FAIL)

    job = _run(context, context.jobs.retry_failed(fingerprint))
    if job is None:
        console.print(f"[yellow]No failed job to retry for {fingerprint}[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[green]✓[/] Queued job {job.id} ({len(job.item_ids)} items)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def deferred(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """List requests waiting for a retry."""
    context = _context(config, db)
    requests = _run(context, context.deferred.get_pending_requests())
    if not requests:
        console.print("No deferred requests")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Deferred requests")
    table.add_column("ID")
    table.add_column("Kind")
    table.add_column("Created")
    table.add_column("Retries", justify="right")
    for request in requests:
        table.add_row(
            request.id,
            request.kind.value,
            request.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{request.retry_count}/{request.max_retries}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("deferred-cleanup")
def deferred_cleanup(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Delete deferred requests that have used up their retries."""
    context = _context(config, db)
    removed = _run(context, context.deferred.cleanup_expired_requests())
    console.print(f"[green]✓[/] Removed {removed} abandoned requests")
    sys.exit(EXIT_CODE_PASS)


@app.command("cache-clear")
def cache_clear(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Only clear entries from this provider"),
    quick: bool = typer.Option(False, "--quick", help="Clear the quick-translation cache instead"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DatabaseOption,
):
    """Clear cached responses."""
    context = _context(config, db)
    cache = context.quick_cache if quick else context.cache
    if provider:
        removed = _run(context, cache.clear_provider(provider))
    else:
        removed = _run(context, cache.clear())
    console.print(f"[green]✓[/] Removed {removed} cache entries")
    sys.exit(EXIT_CODE_PASS)


@app.command("cache-stats")
def cache_stats(config: Optional[str] = ConfigOption, db: Optional[str] = DatabaseOption):
    """Show entry counts of both caches."""
    context = _context(config, db)

    async def collect():
        return await context.cache.stats(), await context.quick_cache.stats()

    content, quick = _run(context, collect())
    table = Table(title="Caches")
    table.add_column("Cache")
    table.add_column("Entries", justify="right")
    table.add_column("Expired", justify="right")
    table.add_row("content", str(content["total_entries"]), str(content["expired_entries"]))
    table.add_row("quick-translation", str(quick["total_entries"]), str(quick["expired_entries"]))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
