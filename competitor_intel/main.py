"""
Competitor Intelligence Pipeline - CLI Entry Point.
CLI using Click and Rich.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import wraps
from typing import AsyncIterator, Optional

import click
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from competitor_intel import __version__
from competitor_intel.config.settings import Settings, get_settings
from competitor_intel.models.schemas import ProgressReport, TriggerSource
from competitor_intel.pipeline.orchestrator import SyncAnalysisRunner
from competitor_intel.pipeline.scheduler import PipelineScheduler
from competitor_intel.pipeline.steps import StepDependencies, build_steps
from competitor_intel.pipeline.task_queue import InMemoryTaskQueue, PipelineWorker
from competitor_intel.pipeline.triggers import RecurringAnalysis
from competitor_intel.services.entity_service import InMemoryEntityStore
from competitor_intel.services.llm_service import create_ai_provider
from competitor_intel.services.notification_service import create_notification_sender
from competitor_intel.services.search_service import create_search_provider
from competitor_intel.storage.analysis_store import SqlAnalysisStore
from competitor_intel.storage.database import Database
from competitor_intel.storage.price_history import SqlPriceHistoryStore
from competitor_intel.utils.errors import ConfigurationError, PipelineError
from competitor_intel.utils.logger import setup_logging

# Initialize Rich Console
console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
}


# =============================================================================
# Helper Functions
# =============================================================================

def async_command(f):
    """Decorator to run async click commands."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return wrapper


def configure_logging(settings: Settings, verbose: bool) -> None:
    level = "DEBUG" if verbose else settings.log_level
    setup_logging(
        level=level,
        json_format=settings.log_json,
        log_file=settings.log_file,
        app_env=settings.app_env,
    )


@dataclass
class Components:
    """Everything a pipeline command needs, wired from settings."""
    database: Database
    deps: StepDependencies
    queue: InMemoryTaskQueue
    worker: PipelineWorker
    scheduler: PipelineScheduler
    runner: SyncAnalysisRunner


@asynccontextmanager
async def open_database(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings.database_url)
    await database.init()
    try:
        yield database
    finally:
        await database.dispose()


def load_entities(settings: Settings) -> InMemoryEntityStore:
    if not settings.entities_file:
        raise ConfigurationError("ENTITIES_FILE is not configured")
    return InMemoryEntityStore.from_json_file(settings.entities_file)


@asynccontextmanager
async def pipeline_components(settings: Settings) -> AsyncIterator[Components]:
    """Build stores, providers, queue, worker, scheduler and runner."""
    entities = load_entities(settings)
    search = create_search_provider(settings)
    ai = create_ai_provider(settings)

    async with open_database(settings) as database:
        analyses = SqlAnalysisStore(database)
        deps = StepDependencies(
            analyses=analyses,
            entities=entities,
            search=search,
            ai=ai,
            price_history=SqlPriceHistoryStore(database),
            notifier=create_notification_sender(settings),
            settings=settings,
        )
        steps = build_steps(deps)
        queue = InMemoryTaskQueue()
        try:
            async with search:
                yield Components(
                    database=database,
                    deps=deps,
                    queue=queue,
                    worker=PipelineWorker(queue, steps),
                    scheduler=PipelineScheduler(analyses, queue, entities),
                    runner=SyncAnalysisRunner(analyses, steps),
                )
        finally:
            await ai.close()


def render_progress(report: ProgressReport, title: str = "Analysis Status") -> Table:
    style = STATUS_STYLES.get(report.status, "white")
    table = Table(title=title, show_header=False)
    table.add_row("Analysis ID", report.analysis_id)
    table.add_row("Status", f"[{style}]{report.status}[/{style}]")
    table.add_row("Step", report.current_step)
    table.add_row("Progress", f"{report.progress}/{report.total_steps} ({report.percentage}%)")
    if report.error:
        table.add_row("Error", f"[red]{report.error}[/red]")
    return table


async def drain(components: Components, description: str) -> None:
    """Run queued steps with a spinner until nothing is left."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task(f"[cyan]{description}", total=None)
        outcomes = await components.worker.run_until_idle()
        progress.update(task, description=f"[green]Processed {len(outcomes)} step(s)")


def fail(message: str, verbose: bool = False) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    if verbose:
        console.print_exception()
    sys.exit(1)


# =============================================================================
# CLI Group
# =============================================================================

@click.group()
@click.version_option(version=__version__)
def cli():
    """Competitor Intelligence Pipeline"""
    pass


# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.argument("entity_ids", nargs=-1, required=True)
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def analyze(entity_ids: tuple[str, ...], verbose: bool):
    """
    Queue analyses and process them through the step pipeline.

    ENTITY_IDS: One or more catalog item ids.
    """
    settings = get_settings()
    configure_logging(settings, verbose)

    trigger = TriggerSource.MANUAL if len(entity_ids) == 1 else TriggerSource.BULK
    console.print(Panel.fit(
        f"[bold blue]Competitor Analysis[/bold blue]\nEntities: [cyan]{', '.join(entity_ids)}[/cyan]"
    ))

    try:
        async with pipeline_components(settings) as components:
            analysis_ids = await components.scheduler.run_many(entity_ids, trigger)
            await drain(components, "Running pipeline...")

            for analysis_id in analysis_ids:
                report = await components.scheduler.get_progress(analysis_id)
                console.print(render_progress(report))
    except PipelineError as e:
        fail(e.message, verbose)


@cli.command("run-sync")
@click.argument("entity_id")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def run_sync(entity_id: str, verbose: bool):
    """
    Run all steps for one entity in a single call.

    ENTITY_ID: Catalog item id.
    """
    settings = get_settings()
    configure_logging(settings, verbose)

    try:
        async with pipeline_components(settings) as components:
            with console.status("[cyan]Analyzing..."):
                result = await components.runner.analyze_entity(entity_id)
    except PipelineError as e:
        fail(e.message, verbose)
        return

    table = Table(title="Analysis Summary", show_header=False)
    table.add_row("Analysis ID", result.analysis_id)
    table.add_row("Status", "[green]Success[/green]" if result.success else "[red]Failed[/red]")
    table.add_row("Message", result.message)
    table.add_row("Competitors", str(result.competitors))
    table.add_row("Duration", f"{result.duration_ms / 1000:.2f}s")
    console.print(table)

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("analysis_id")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def retry(analysis_id: str, verbose: bool):
    """
    Retry a failed analysis from the search step.

    ANALYSIS_ID: Id printed by analyze or run-sync.
    """
    settings = get_settings()
    configure_logging(settings, verbose)

    try:
        async with pipeline_components(settings) as components:
            await components.scheduler.retry(analysis_id)
            await drain(components, "Retrying...")
            console.print(render_progress(await components.scheduler.get_progress(analysis_id)))
    except PipelineError as e:
        fail(e.message, verbose)


@cli.command()
@click.argument("analysis_id")
@async_command
async def status(analysis_id: str):
    """Show progress of an analysis."""
    settings = get_settings()
    configure_logging(settings, False)

    try:
        async with open_database(settings) as database:
            record = await SqlAnalysisStore(database).get(analysis_id)
    except PipelineError as e:
        fail(e.message)
        return

    console.print(render_progress(ProgressReport.from_record(record)))
    if record.final_data:
        console.print_json(data=record.final_data)


@cli.command()
@click.argument("entity_id")
@async_command
async def history(entity_id: str):
    """List recorded competitor prices for an entity, oldest first."""
    settings = get_settings()
    configure_logging(settings, False)

    async with open_database(settings) as database:
        rows = await SqlPriceHistoryStore(database).get_history(entity_id)

    if not rows:
        console.print(f"[yellow]No price history for {entity_id}.[/yellow]")
        return

    table = Table(title=f"Price History: {entity_id}", header_style="bold magenta")
    table.add_column("Recorded")
    table.add_column("Competitor")
    table.add_column("Price", justify="right")
    table.add_column("Currency")
    table.add_column("Analysis")
    for row in rows:
        table.add_row(
            row.recorded_at.strftime("%Y-%m-%d %H:%M"),
            row.competitor_name,
            str(row.price),
            row.currency,
            row.analysis_id,
        )
    console.print(table)


@cli.command()
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def sweep(verbose: bool):
    """Run one recurring analysis sweep over the catalog."""
    settings = get_settings()
    configure_logging(settings, verbose)

    try:
        async with pipeline_components(settings) as components:
            recurring = RecurringAnalysis(components.scheduler, components.deps.entities, settings)
            scheduled = await recurring.sweep()
            await drain(components, f"Analyzing {len(scheduled)} entities...")
    except PipelineError as e:
        fail(e.message, verbose)
        return

    console.print(Panel(
        f"Sweep Complete\nScheduled: [green]{len(scheduled)}[/green]\n"
        f"Next sweep in: [cyan]{recurring.interval // 3600}h[/cyan]"
    ))


async def wait_for_shutdown() -> None:
    """Block until the running command is cancelled (Ctrl+C)."""
    await asyncio.Event().wait()


@cli.command()
@click.option("--concurrency", default=1, show_default=True, help="Background step consumers")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def serve(concurrency: int, verbose: bool):
    """Run the worker and the recurring analysis sweep until interrupted."""
    settings = get_settings()
    configure_logging(settings, verbose)

    if not settings.scheduled_analysis_enabled:
        console.print("[yellow]Scheduled analysis is disabled. Set SCHEDULED_ANALYSIS_ENABLED=true.[/yellow]")
        return

    try:
        async with pipeline_components(settings) as components:
            recurring = RecurringAnalysis(components.scheduler, components.deps.entities, settings)
            sweeper = AsyncIOScheduler()
            recurring.schedule(sweeper)

            components.worker.start(concurrency)
            sweeper.start()
            console.print(Panel.fit(
                f"[bold blue]Competitor Intelligence Worker[/bold blue]\n"
                f"Consumers: [cyan]{concurrency}[/cyan]\n"
                f"Sweep every: [cyan]{recurring.interval // 3600}h[/cyan] "
                f"({settings.scheduled_analysis_frequency})"
            ))
            try:
                await wait_for_shutdown()
            finally:
                sweeper.shutdown(wait=False)
                await components.worker.stop()
    except PipelineError as e:
        fail(e.message, verbose)


@cli.command()
def validate_setup():
    """Check API keys and environment configuration."""
    console.print("[bold]Validating Setup...[/bold]")

    try:
        settings = get_settings()
    except Exception as e:
        fail(f"Configuration Error: {e}")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")

    ok = True

    if settings.ai_provider == "claude":
        has_ai = settings.anthropic_api_key is not None
        details = "configured" if has_ai else "ANTHROPIC_API_KEY missing"
    else:
        has_ai = True
        details = settings.ollama_url
    table.add_row("AI Provider", "[green]Pass[/green]" if has_ai else "[red]Fail[/red]", f"{settings.ai_provider}: {details}")
    ok = ok and has_ai

    has_search = settings.get_search_api_key() is not None
    table.add_row(
        "Search Provider",
        "[green]Pass[/green]" if has_search else "[red]Fail[/red]",
        settings.search_provider,
    )
    ok = ok and has_search

    has_entities = bool(settings.entities_file)
    table.add_row(
        "Entities File",
        "[green]Pass[/green]" if has_entities else "[red]Fail[/red]",
        settings.entities_file or "ENTITIES_FILE missing",
    )
    ok = ok and has_entities

    table.add_row("Database", "[blue]Info[/blue]", settings.database_url)
    table.add_row("Modules", "[blue]Info[/blue]", ", ".join(settings.enabled_modules) or "none")
    table.add_row(
        "Scheduled Analysis",
        "[blue]Info[/blue]",
        settings.scheduled_analysis_frequency if settings.scheduled_analysis_enabled else "disabled",
    )
    table.add_row("Environment", "[blue]Info[/blue]", settings.app_env)

    console.print(table)
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    cli()
