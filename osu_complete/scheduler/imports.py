"""Import queue.

A player moves ``unqueued -> queued -> importing -> unqueued``. Only one
import runs at a time; the scheduler owns a ``running`` flag and
:meth:`ImportScheduler.tick` does nothing while it is set.

Progress is committed to the queue row after every batch, so an import
that is interrupted (crash, restart, API outage) resumes from its last
committed batch on the next tick. Passes are insert-or-ignore, which makes
re-reading a partially saved batch harmless.

Example:
    >>> scheduler = ImportScheduler(session, OsuApiClient())
    >>> scheduler.enqueue(2)
    True
    >>> scheduler.tick()
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select

from osu_complete.config import get_settings
from osu_complete.data.db import transaction
from osu_complete.data.models import ImportTask, Player
from osu_complete.data.pipelines import PipelineStatus, SyncPipeline
from osu_complete.data.schema import now_ms
from osu_complete.data.sources import ChartSweepSource, MostPlayedSource, count_sweep_charts
from osu_complete.exceptions import PlayerNotFound
from osu_complete.logging import FAIL, SUCCESS
from osu_complete.notify import USER_COLOR, NullNotifier
from osu_complete.stats.aggregation import GLOBAL_PLAYER_ID
from osu_complete.stats.read import queue_overview

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient
    from osu_complete.data.pipelines import SaveResult
    from osu_complete.data.sources import ScoreBatch, ScoreSource
    from osu_complete.notify import Notifier

logger = logging.getLogger(__name__)

# Full imports are slow, so they go behind every regular import
FULL_IMPORT_DELAY_MS = int(timedelta(days=7).total_seconds() * 1000)


class ImportScheduler:
    """Queues player imports and runs them one at a time.

    Attributes:
        running: Set while an import is in progress.
    """

    def __init__(
        self,
        session: Session,
        api_client: OsuApiClient,
        pipeline: SyncPipeline | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.session = session
        self.api = api_client
        self.notifier = notifier or NullNotifier()
        self.pipeline = pipeline or SyncPipeline(session, api_client, self.notifier)
        self.running = False
        self.logger = logging.getLogger(self.__class__.__name__)

    # =========================================================================
    # Queue
    # =========================================================================

    def enqueue(self, player_id: int, full: bool = False) -> bool:
        """Queue a player's import.

        Args:
            player_id: osu! user id.
            full: Check every stored beatmap instead of the most played list.

        Returns:
            False if the player is already queued or has nothing to import.

        Raises:
            PlayerNotFound: If the API has no such user.
            ExternalFetchError: If the user can't be fetched.
        """
        if self.session.get(ImportTask, player_id) is not None:
            self.logger.info(f"Player {player_id} is already queued")
            return False

        data = self.pipeline.fetch_player(player_id)
        total = count_sweep_charts(self.session) if full else data.get("beatmap_playcounts_count", 0)
        if not total:
            self.logger.info(f"{data['username']} has nothing to import")
            return False

        player = self.pipeline.store_player_profile(player_id, data)
        time_queued = now_ms() + (FULL_IMPORT_DELAY_MS if full else 0)
        with transaction(self.session):
            self.session.add(
                ImportTask(
                    player_id=player_id,
                    time_queued=time_queued,
                    is_full=full,
                    source_total_count=total,
                )
            )
        kind = "full import" if full else "import"
        self.logger.info(f"Queued {player.name} for {kind} ({total:,} to check)")
        return True

    def unqueue(self, player_id: int) -> bool:
        """Remove a waiting import. Started imports can't be removed.

        Returns:
            True if a task was removed.
        """
        task = self.session.get(ImportTask, player_id)
        if task is None or task.is_started:
            return False
        with transaction(self.session):
            self.session.delete(task)
        self.logger.info(f"Removed player {player_id} from the import queue")
        return True

    def next_task(self) -> ImportTask | None:
        """The started task if there is one, else the earliest queued."""
        started = self.session.scalars(
            select(ImportTask).where(ImportTask.time_started > 0).limit(1)
        ).first()
        if started is not None:
            return started
        return self.session.scalars(
            select(ImportTask).order_by(ImportTask.time_queued).limit(1)
        ).first()

    def queue_overview(self) -> dict[str, list[Player]]:
        return queue_overview(self.session)

    # =========================================================================
    # Running
    # =========================================================================

    def tick(self) -> bool:
        """Run the next import if none is running.

        Returns:
            True if an import was attempted.
        """
        if self.running:
            return False
        task = self.next_task()
        if task is None:
            return False

        self.running = True
        try:
            self.run_import(task)
        finally:
            self.running = False
        return True

    def _build_source(self, task: ImportTask) -> ScoreSource:
        if task.is_full:
            return ChartSweepSource(
                self.session,
                self.api,
                task.player_id,
                last_set_id=task.last_set_id,
                offset=task.checkpoint_offset,
            )
        return MostPlayedSource(
            self.session,
            self.api,
            self.pipeline.chart_cache,
            task.player_id,
            offset=task.checkpoint_offset,
        )

    def _drop(self, task: ImportTask, reason: str) -> None:
        player_id = task.player_id
        with transaction(self.session):
            self.session.delete(task)
        self.logger.warning(f"Removed import of player {player_id}: {reason}")

    def run_import(self, task: ImportTask) -> bool:
        """Run (or resume) one import until it completes or fails.

        Returns:
            True if the import completed.
        """
        player = self.session.get(Player, task.player_id)
        if player is None:
            self._drop(task, "player isn't stored")
            return False
        try:
            player = self.pipeline.update_player_profile(task.player_id, force=True)
        except PlayerNotFound as e:
            self._drop(task, str(e))
            return False

        if task.is_started:
            self.logger.info(
                f"Resuming import of {player.name} at {task.percent_complete:.1f}%"
            )
        else:
            with transaction(self.session):
                task.time_started = now_ms()
                task.time_queued = 0
            self.logger.info(f"Starting import of {player.name}")

        def on_batch(batch: ScoreBatch, saved: SaveResult) -> None:
            with transaction(self.session):
                task.checkpoint_offset = batch.offset
                if batch.last_set_id:
                    task.last_set_id = batch.last_set_id
                task.passes_imported += saved.passes_saved
                task.percent_complete = (
                    min(100.0, batch.offset / task.source_total_count * 100)
                    if task.source_total_count
                    else 100.0
                )
            self.logger.info(
                f"Import of {player.name} at {task.percent_complete:.1f}% "
                f"({task.passes_imported:,} new passes)"
            )

        source = self._build_source(task)
        result = self.pipeline.ingest(source, notify=False, on_batch=on_batch)
        if source.sets_saved:
            self.pipeline.stats.recompute(GLOBAL_PLAYER_ID, force=True)
        if result.status is PipelineStatus.FAILED:
            self.logger.error(
                f"{FAIL} Import of {player.name} stopped at {task.percent_complete:.1f}%, "
                "it will resume on the next tick"
            )
            return False

        self._complete(task, player)
        return True

    def _complete(self, task: ImportTask, player: Player) -> None:
        started = task.time_started
        passes_imported = task.passes_imported
        is_full = task.is_full
        with transaction(self.session):
            self.session.delete(task)
            player.last_import_time = now_ms()
            if is_full:
                player.has_full_import = True

        self.pipeline.stats.recompute(player.id, force=True)

        minutes = max(0, now_ms() - started) / 60000
        self.logger.info(
            f"{SUCCESS} Completed import of {player.name} with {passes_imported:,} "
            f"new passes in {minutes:.1f} minutes"
        )
        settings = get_settings()
        self.notifier.send_embeds(
            "user",
            [{
                "author": {
                    "name": player.name,
                    "icon_url": player.avatar_url,
                    "url": f"{settings.base_url}/u/{player.id}",
                },
                "description": (
                    f"Completed {'full ' if is_full else ''}import of "
                    f"{passes_imported:,} new passes"
                ),
                "color": USER_COLOR,
            }],
        )
