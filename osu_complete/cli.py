"""CLI entrypoint using Typer.

This module defines the command-line interface for osu!complete: running
the background worker, seeding beatmaps from a dump, managing the import
queue and inspecting stats.

Example:
    $ osu-complete --help
    $ osu-complete import-beatmaps dumps/2024_10_01_osu_files
    $ osu-complete queue 2 --full
    $ osu-complete worker
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from osu_complete import __version__
from osu_complete.config import get_settings
from osu_complete.logging import setup_logging

# Initialize console for rich output
console = Console()

# Create main app
app = typer.Typer(
    name="osu-complete",
    help="osu!complete pass tracking CLI",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

sync_app = typer.Typer(
    name="sync",
    help="Run one sync job immediately",
    no_args_is_help=True,
)

app.add_typer(sync_app, name="sync")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]osu-complete[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-V",
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """osu!complete pass tracking CLI.

    Tracks which ranked and loved beatmaps players have passed and keeps
    per-category completion stats up to date.
    """
    settings = get_settings()
    log_level = "DEBUG" if verbose else settings.log_level
    setup_logging(level=log_level, log_dir=settings.log_dir_obj)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error: {message}[/red]")
    return typer.Exit(1)


# =============================================================================
# Beatmaps and stats
# =============================================================================


@app.command("import-beatmaps")
def import_beatmaps_command(
    dump_path: Annotated[
        Path,
        typer.Argument(help="data.ppy.sh dump folder or osu_beatmapsets.sql file"),
    ],
) -> None:
    """Save every beatmapset from a database dump that isn't stored yet."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.data.dump import import_beatmaps

    get_settings().ensure_directories()
    init_db()

    with session_scope() as session:
        try:
            result = import_beatmaps(session, OsuApiClient(), dump_path)
        except FileNotFoundError as e:
            raise _fail(str(e)) from None

    console.print(
        Panel(
            f"[bold]Sets in dump:[/bold] {result.sets_seen:,}\n"
            f"[bold]Sets saved:[/bold] {result.sets_saved:,}\n"
            f"[bold]Beatmaps saved:[/bold] {result.charts_saved:,}\n"
            f"[bold]Failed:[/bold] {len(result.failed_set_ids):,}",
            title="Beatmap Import",
        )
    )


@app.command("update-stats")
def update_stats(
    player: Annotated[
        int | None,
        typer.Option("--player", "-p", help="Only recompute this player"),
    ] = None,
) -> None:
    """Recompute category stats for one player or everyone."""
    from osu_complete.data import init_db, session_scope
    from osu_complete.exceptions import PlayerNotFound
    from osu_complete.stats import GLOBAL_PLAYER_ID, StatsEngine

    init_db()
    with session_scope() as session:
        engine = StatsEngine(session)
        if player is None:
            count = engine.recompute_all()
            console.print(f"[green]Updated stats for {count} players[/green]")
            return
        try:
            engine.recompute(GLOBAL_PLAYER_ID, force=True)
            engine.recompute(player, force=True)
        except PlayerNotFound as e:
            raise _fail(str(e)) from None
        console.print(f"[green]Updated stats for player {player}[/green]")


@app.command("stats")
def stats_command(
    player: Annotated[int, typer.Argument(help="osu! user id")],
    category: Annotated[str, typer.Argument(help="Category id or alias")] = "osu-ranked",
) -> None:
    """Show a player's completion in a category."""
    from osu_complete.categories import category_name, validate_category_id
    from osu_complete.data import Player, init_db, session_scope
    from osu_complete.stats import get_completion_stats, get_yearly_stats

    category_id = validate_category_id(category)
    if category_id is None:
        raise _fail(f"Unknown category {category!r}")

    init_db()
    with session_scope() as session:
        stored = session.get(Player, player)
        if stored is None:
            raise _fail(f"Player with ID {player} not found")
        stats = get_completion_stats(session, player, category_id)
        yearly = get_yearly_stats(session, player, category_id)

        console.print(
            Panel(
                f"[bold]Completion:[/bold] {stats.percentage_completed:.2f}%\n"
                f"[bold]Passes:[/bold] {stats.count_completed:,} / {stats.count_total:,}\n"
                f"[bold]Completion xp:[/bold] {stats.xp:,} / {stats.xp_total:,}\n"
                f"[bold]Rank:[/bold] #{stats.rank:,} (best #{stats.best_rank:,})",
                title=f"{stored.name}: {category_name(category_id)}",
            )
        )

        table = Table(title="By ranked year")
        table.add_column("Year", style="cyan")
        table.add_column("Passes", justify="right")
        table.add_column("Completion", justify="right", style="green")
        for year in yearly:
            table.add_row(
                str(year.year),
                f"{year.count_completed:,} / {year.count_total:,}",
                f"{year.time_percentage_completed:.2f}%",
            )
        console.print(table)


@app.command("leaderboard")
def leaderboard_command(
    category: Annotated[str, typer.Argument(help="Category id or alias")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries per page")] = 25,
    page: Annotated[int, typer.Option("--page", help="Page number, from 1")] = 1,
) -> None:
    """Show a category leaderboard."""
    from osu_complete.categories import category_name, validate_category_id
    from osu_complete.data import init_db, session_scope
    from osu_complete.stats import get_leaderboard

    category_id = validate_category_id(category)
    if category_id is None:
        raise _fail(f"Unknown category {category!r}")

    init_db()
    with session_scope() as session:
        leaderboard = get_leaderboard(
            session, category_id, limit=limit, offset=(max(page, 1) - 1) * limit
        )

        table = Table(title=f"{category_name(category_id)} ({leaderboard.total_players} players)")
        table.add_column("Rank", justify="right", style="cyan")
        table.add_column("Player")
        table.add_column("Completion", justify="right", style="green")
        table.add_column("Passes", justify="right")
        table.add_column("cxp", justify="right")
        for entry in leaderboard.entries:
            table.add_row(
                f"#{entry.rank}",
                entry.name,
                f"{entry.stats.percentage_completed:.2f}%",
                f"{entry.stats.count_completed:,}",
                f"{entry.stats.xp:,}",
            )
        console.print(table)


@app.command("categories")
def categories_command() -> None:
    """List every stat category."""
    from osu_complete.categories import DEFINITIONS, category_name

    table = Table(title=f"Stat categories ({len(DEFINITIONS)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    for definition in DEFINITIONS:
        table.add_row(definition.id, category_name(definition.id))
    console.print(table)


@app.command("snapshot")
def snapshot_command(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Write even if today's snapshot was taken"),
    ] = False,
) -> None:
    """Take today's history snapshot."""
    from osu_complete.data import init_db, session_scope
    from osu_complete.stats import HistorySnapshot

    init_db()
    with session_scope() as session:
        written = HistorySnapshot(session).take(force=force)
    console.print(f"[green]Saved {written} history rows[/green]")


# =============================================================================
# Import queue
# =============================================================================


@app.command("queue")
def queue_command(
    player: Annotated[int, typer.Argument(help="osu! user id")],
    full: Annotated[
        bool,
        typer.Option("--full", "-f", help="Check every stored beatmap"),
    ] = False,
) -> None:
    """Queue a player for import."""
    from osu_complete.data import ExternalFetchError, OsuApiClient, init_db, session_scope
    from osu_complete.exceptions import PlayerNotFound
    from osu_complete.scheduler import ImportScheduler

    init_db()
    with session_scope() as session:
        scheduler = ImportScheduler(session, OsuApiClient())
        try:
            queued = scheduler.enqueue(player, full=full)
        except (PlayerNotFound, ExternalFetchError) as e:
            raise _fail(str(e)) from None
    if queued:
        console.print(f"[green]Queued player {player}[/green]")
    else:
        console.print(f"[yellow]Player {player} was not queued[/yellow]")


@app.command("unqueue")
def unqueue_command(
    player: Annotated[int, typer.Argument(help="osu! user id")],
) -> None:
    """Remove a waiting import from the queue."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.scheduler import ImportScheduler

    init_db()
    with session_scope() as session:
        removed = ImportScheduler(session, OsuApiClient()).unqueue(player)
    if removed:
        console.print(f"[green]Removed player {player} from the queue[/green]")
    else:
        console.print(f"[yellow]Player {player} has no waiting import[/yellow]")


@app.command("status")
def status_command(
    player: Annotated[
        int | None,
        typer.Argument(help="osu! user id (omit for the whole queue)"),
    ] = None,
) -> None:
    """Show a player's import progress, or the queue."""
    from osu_complete.data import init_db, session_scope
    from osu_complete.stats import get_import_status, queue_overview

    init_db()
    with session_scope() as session:
        if player is None:
            overview = queue_overview(session)
            table = Table(title="Import Queue")
            table.add_column("State", style="cyan")
            table.add_column("Player")
            for state in ("in_progress", "waiting"):
                for queued in overview[state]:
                    table.add_row(state.replace("_", " "), queued.name)
            console.print(table)
            return

        status = get_import_status(session, player)
        if not status.queued:
            console.print(f"Player {player} is not queued")
            return
        minutes = status.estimated_seconds_remaining / 60
        console.print(
            Panel(
                f"[bold]Position:[/bold] {status.position}\n"
                f"[bold]Type:[/bold] {'full' if status.is_full else 'most played'}\n"
                f"[bold]Progress:[/bold] {status.percent_complete:.1f}%\n"
                f"[bold]New passes:[/bold] {status.passes_imported:,}\n"
                f"[bold]Estimated time left:[/bold] {minutes:.0f} minutes",
                title=f"Import of player {player}",
            )
        )


# =============================================================================
# Worker and sync jobs
# =============================================================================


@app.command("worker")
def worker_command() -> None:
    """Run the import queue and every recurring sync job until interrupted."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.scheduler import Worker

    get_settings().ensure_directories()
    init_db()
    with session_scope() as session:
        worker = Worker.from_settings(session, OsuApiClient())
        console.print(f"[bold]Worker running {len(worker.tasks)} tasks, Ctrl+C to stop[/bold]")
        try:
            worker.run_forever()
        except KeyboardInterrupt:
            worker.stop()
            console.print("[yellow]Worker stopped[/yellow]")


def _display_pipeline_result(result) -> None:
    """Display pipeline result to console."""
    from osu_complete.data.pipelines import PipelineStatus

    status_color = {
        PipelineStatus.COMPLETED: "green",
        PipelineStatus.FAILED: "red",
        PipelineStatus.RUNNING: "yellow",
        PipelineStatus.PENDING: "white",
    }.get(result.status, "white")

    console.print(f"\n[{status_color}]Status: {result.status.value}[/{status_color}]")
    console.print(f"Batches: {result.batches}")
    console.print(f"Scores seen: {result.scores_seen}")
    console.print(f"New passes: {result.passes_saved}")
    console.print(f"Duration: {result.duration_seconds:.1f}s")

    if result.errors:
        console.print(f"\n[red]Errors ({len(result.errors)}):[/red]")
        for error in result.errors[:10]:
            console.print(f"  - {error}")


@sync_app.command("global")
def sync_global() -> None:
    """Save passes from the global recent scores feed."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.data.pipelines import SyncPipeline
    from osu_complete.notify import build_notifier

    init_db()
    with session_scope() as session:
        pipeline = SyncPipeline(session, OsuApiClient(), build_notifier())
        _display_pipeline_result(pipeline.sync_global_recents())


@sync_app.command("player")
def sync_player(
    player: Annotated[int, typer.Argument(help="osu! user id")],
) -> None:
    """Save passes from one player's recent scores."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.data.pipelines import SyncPipeline
    from osu_complete.exceptions import PlayerNotFound
    from osu_complete.notify import build_notifier

    init_db()
    with session_scope() as session:
        pipeline = SyncPipeline(session, OsuApiClient(), build_notifier())
        try:
            result = pipeline.sync_player_recents(player)
        except PlayerNotFound as e:
            raise _fail(str(e)) from None
        _display_pipeline_result(result)


@sync_app.command("maps")
def sync_maps(
    statuses: Annotated[
        bool,
        typer.Option("--statuses", help="Also re-check the status of every stored set"),
    ] = False,
) -> None:
    """Save newly ranked and loved beatmapsets."""
    from osu_complete.data import OsuApiClient, init_db, session_scope
    from osu_complete.data.pipelines import SyncPipeline
    from osu_complete.notify import build_notifier

    init_db()
    with session_scope() as session:
        pipeline = SyncPipeline(session, OsuApiClient(), build_notifier())
        saved = pipeline.sync_new_chart_sets()
        console.print(f"[green]Saved {saved} new beatmapsets[/green]")
        if statuses:
            sweep = pipeline.sync_chart_statuses()
            console.print(
                f"[green]Checked {sweep.sets_checked:,} beatmapsets, "
                f"{sweep.sets_updated:,} changed status[/green]"
            )


if __name__ == "__main__":
    app()
