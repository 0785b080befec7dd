"""CLI entry point for Pick Sync: daily pick harvesting and ranking.

Provides the ``picksync`` command with subcommands for running a scan,
starting the timer trigger, and inspecting stored picks, run history and the
operational log.

This is the ONLY module where ``print()`` is allowed. All other modules use
``logging``. Async internals are bridged to typer's synchronous interface via
``asyncio.run()``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from Pick_Sync.agents import BatchAnalyzer, LLMAnalysisService, build_analysis_service
from Pick_Sync.config import Settings, get_settings
from Pick_Sync.data import Database, Repository
from Pick_Sync.logging_config import configure_logging
from Pick_Sync.models import Pick, PickOutcome, ScanResult, ScanRun, ScanTrigger
from Pick_Sync.scanner import ScanCoordinator, ScanScheduler
from Pick_Sync.services import PickQueries, RedditThreadSource, ServiceCache

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(name="picksync", help="Harvest, rank and track daily sports picks")

# Rich console for formatted output
console = Console()

_STATUS_POLL_SECONDS: float = 0.5
_MESSAGE_PREVIEW_CHARS: int = 120

_OUTCOME_STYLES: dict[PickOutcome, str] = {
    PickOutcome.WON: "green",
    PickOutcome.LOST: "red",
    PickOutcome.PUSH: "yellow",
    PickOutcome.PENDING: "dim",
}

# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass
class _Runtime:
    settings: Settings
    repository: Repository
    cache: ServiceCache
    coordinator: ScanCoordinator
    queries: PickQueries


@asynccontextmanager
async def _open_runtime(settings: Settings) -> AsyncIterator[_Runtime]:
    """Connect the database and build the scan pipeline from *settings*."""
    cache = ServiceCache()
    source = RedditThreadSource.from_settings(settings)
    service: LLMAnalysisService = build_analysis_service(settings)
    try:
        async with Database(settings.db_path) as db:
            repository = Repository(db)
            coordinator = ScanCoordinator(
                source,
                BatchAnalyzer.from_settings(service, cache, settings),
                repository,
                cache,
                topic=settings.topic,
                incremental=settings.incremental,
            )
            yield _Runtime(
                settings=settings,
                repository=repository,
                cache=cache,
                coordinator=coordinator,
                queries=PickQueries(repository, cache),
            )
    finally:
        await source.aclose()
        await service.aclose()


# ---------------------------------------------------------------------------
# scan command
# ---------------------------------------------------------------------------


@app.command()
def scan(
    incremental: Annotated[
        bool | None,
        typer.Option(
            "--incremental/--full",
            help="Only analyze comments newer than the last run (default from settings)",
        ),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Suppress info logging")] = False,
) -> None:
    """Fetch today's thread, extract picks, and store them as the current run."""
    configure_logging(verbose=verbose, quiet=quiet)
    result = asyncio.run(_scan_async(get_settings(), incremental=incremental))
    if not result.success:
        raise typer.Exit(code=1)


async def _scan_async(settings: Settings, *, incremental: bool | None) -> ScanResult:
    async with _open_runtime(settings) as runtime:
        coordinator = runtime.coordinator
        with Progress(
            SpinnerColumn(spinner_name="line"),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Starting scan...", total=None)
            scan_task = asyncio.create_task(
                coordinator.run_scan(ScanTrigger.MANUAL, incremental=incremental)
            )
            while not scan_task.done():
                snapshot = coordinator.status()
                progress.update(
                    task,
                    description=f"[{snapshot.progress:>3}%] {snapshot.step}: {snapshot.detail}",
                )
                await asyncio.wait({scan_task}, timeout=_STATUS_POLL_SECONDS)
            result = scan_task.result()

        _render_scan_result(result)
        if result.success and result.pick_count:
            _render_picks(await runtime.queries.today_picks(settings.topic))
        return result


def _render_scan_result(result: ScanResult) -> None:
    if result.busy:
        console.print(f"[yellow]{result.message}[/yellow]")
        return
    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        return

    console.print(f"[green]{result.message}[/green]")
    if result.scan_id is not None:
        console.print(
            f"[dim]Run {result.scan_id} ({result.grouping_key}) - "
            f"{result.source_item_count} comments, {result.batch_count} batches, "
            f"{result.failed_batches} failed, {result.cost_units:,} tokens[/dim]"
        )


# ---------------------------------------------------------------------------
# schedule command
# ---------------------------------------------------------------------------


@app.command()
def schedule(
    run_now: Annotated[
        bool, typer.Option("--run-now", help="Run one scan immediately after starting")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Start the timer trigger and keep running until interrupted (Ctrl+C)."""
    configure_logging(verbose=verbose)
    try:
        asyncio.run(_schedule_async(get_settings(), run_now=run_now))
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped.[/yellow]")


async def _schedule_async(settings: Settings, *, run_now: bool) -> None:
    async with _open_runtime(settings) as runtime:
        scheduler = ScanScheduler(
            runtime.coordinator,
            runtime.repository,
            cron=settings.scan_cron,
            timezone=settings.timezone,
        )
        await runtime.cache.warm(runtime.queries.warmers(settings.topic))
        await scheduler.start()
        try:
            state = scheduler.status()
            console.print(
                f"[bold]Scheduler active[/bold] ({state.schedule} {state.timezone}), "
                f"next run: {state.next_run_at}"
            )
            if run_now:
                _render_scan_result(await runtime.coordinator.run_scan(ScanTrigger.MANUAL))
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()


# ---------------------------------------------------------------------------
# status command
# ---------------------------------------------------------------------------


@app.command()
def status(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Show the current run's picks and overall settlement counts."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_status_async(get_settings()))


async def _status_async(settings: Settings) -> None:
    async with _open_runtime(settings) as runtime:
        current = await runtime.repository.get_current(settings.topic)
        if current is None:
            console.print(f"[yellow]No current run for {settings.topic}.[/yellow]")
            return

        console.print(
            f"\n[bold underline]{current.title or current.grouping_key}[/bold underline]"
        )
        console.print(f"[dim]{current.url}[/dim]")
        console.print(
            f"Run {current.id} at {current.started_at:%Y-%m-%d %H:%M} UTC, "
            f"{current.extracted_item_count} picks from {current.source_item_count} comments"
        )
        _render_picks(await runtime.queries.today_picks(settings.topic))

        stats = await runtime.queries.pick_stats()
        console.print(
            f"\nAll-time: {stats.total} picks - [green]{stats.won} won[/green], "
            f"[red]{stats.lost} lost[/red], [yellow]{stats.push} push[/yellow], "
            f"{stats.pending} pending"
        )


def _render_picks(picks: list[Pick]) -> None:
    if not picks:
        console.print("[yellow]No picks to display.[/yellow]")
        return

    table = Table(title="Current Picks", show_lines=False)
    table.add_column("#", justify="right", style="bold")
    table.add_column("Conf", justify="right")
    table.add_column("Sport", style="cyan")
    table.add_column("Matchup")
    table.add_column("Pick", style="bold")
    table.add_column("Odds", justify="right")
    table.add_column("Capper")
    table.add_column("Record", justify="right")
    table.add_column("Outcome")

    for pick in picks:
        if pick.confidence >= 85:  # noqa: PLR2004
            conf_style = "green"
        elif pick.confidence >= 55:  # noqa: PLR2004
            conf_style = "yellow"
        else:
            conf_style = "red"
        outcome_style = _OUTCOME_STYLES.get(pick.outcome, "")
        table.add_row(
            str(pick.rank),
            f"[{conf_style}]{pick.confidence}[/{conf_style}]",
            pick.category,
            pick.subject,
            pick.action,
            pick.derived_quantity or "--",
            pick.source_author,
            pick.source_record or "--",
            f"[{outcome_style}]{pick.outcome}[/{outcome_style}]",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# history command
# ---------------------------------------------------------------------------


@app.command()
def history(
    limit: Annotated[int, typer.Option(help="Number of past runs to show")] = 20,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """List past (non-current) runs for the configured topic."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_history_async(get_settings(), limit=limit))


async def _history_async(settings: Settings, *, limit: int) -> None:
    async with _open_runtime(settings) as runtime:
        runs = await runtime.queries.history(settings.topic, limit=limit)
        if not runs:
            console.print("[yellow]No past runs yet.[/yellow]")
            return
        _render_runs(runs, title=f"History: {settings.topic}")


def _render_runs(runs: list[ScanRun], *, title: str) -> None:
    table = Table(title=title)
    table.add_column("Started (UTC)", style="dim")
    table.add_column("Run ID")
    table.add_column("Thread")
    table.add_column("Status")
    table.add_column("Picks", justify="right")
    table.add_column("Comments", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Duration", justify="right")

    for run in runs:
        table.add_row(
            f"{run.started_at:%Y-%m-%d %H:%M}",
            run.id,
            run.grouping_key,
            str(run.status),
            str(run.extracted_item_count),
            str(run.source_item_count),
            f"{run.cost_units:,}",
            f"{run.duration_ms / 1000:.1f}s",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# logs command
# ---------------------------------------------------------------------------


@app.command()
def logs(
    limit: Annotated[int, typer.Option(help="Number of log entries to show")] = 50,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Show the operational log of scans and scheduler starts/stops."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_logs_async(get_settings(), limit=limit))


async def _logs_async(settings: Settings, *, limit: int) -> None:
    async with _open_runtime(settings) as runtime:
        events = await runtime.repository.get_scheduler_logs(limit=limit)
        if not events:
            console.print("[yellow]No log entries yet.[/yellow]")
            return

        table = Table(title="Scheduler Log")
        table.add_column("Time (UTC)", style="dim")
        table.add_column("Event")
        table.add_column("OK")
        table.add_column("Run ID")
        table.add_column("Message")

        for event in events:
            table.add_row(
                f"{event.created_at:%Y-%m-%d %H:%M:%S}",
                event.event_type,
                "[green]yes[/green]" if event.success else "[red]no[/red]",
                event.scan_id or "--",
                event.message[:_MESSAGE_PREVIEW_CHARS],
            )

        console.print(table)


if __name__ == "__main__":
    app()
