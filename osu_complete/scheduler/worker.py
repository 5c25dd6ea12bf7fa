"""Single-threaded worker loop.

The worker holds a list of :class:`ScheduledTask` objects, each with an
interval and an explicit ``next_run`` time, and runs due tasks one after
another. A task that raises is logged and rescheduled like any other run,
so one failing feed never stops the rest.

Default schedule:
    import tick         every 5 seconds
    global recents      every 2 minutes
    new beatmapsets     every 5 minutes
    history snapshot    checked every minute, taken once per day
    status sweep        every 24 hours, first run after 1 hour

Example:
    >>> worker = Worker.from_settings(session, OsuApiClient())
    >>> worker.start()
    >>> worker.stop()
    >>> worker.join()
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from osu_complete.config import get_settings
from osu_complete.data.pipelines import SyncPipeline
from osu_complete.notify import build_notifier
from osu_complete.scheduler.imports import ImportScheduler
from osu_complete.stats.history import HistorySnapshot

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient
    from osu_complete.notify import Notifier

logger = logging.getLogger(__name__)

IMPORT_TICK_INTERVAL = 5.0
GLOBAL_RECENTS_INTERVAL = 120.0
NEW_CHART_SETS_INTERVAL = 300.0
HISTORY_CHECK_INTERVAL = 60.0
STATUS_SWEEP_INTERVAL = 24 * 60 * 60.0
STATUS_SWEEP_FIRST_DELAY = 60 * 60.0

# Longest the loop sleeps between checks, so stop() is noticed promptly
MAX_IDLE_SECONDS = 1.0


@dataclass
class ScheduledTask:
    """A recurring job.

    Attributes:
        name: Label used in logs.
        interval: Seconds between runs, measured from the end of a run.
        func: Callable to run.
        next_run: Monotonic time of the next run.
    """

    name: str
    interval: float
    func: Callable[[], Any]
    next_run: float = 0.0

    def is_due(self, now: float) -> bool:
        return now >= self.next_run


class Worker:
    """Runs scheduled tasks until stopped."""

    def __init__(
        self,
        tasks: list[ScheduledTask] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tasks: list[ScheduledTask] = tasks or []
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        session: Session,
        api_client: OsuApiClient,
        notifier: Notifier | None = None,
    ) -> Worker:
        """Build a worker with the default schedule."""
        notifier = notifier or build_notifier()
        pipeline = SyncPipeline(session, api_client, notifier)
        imports = ImportScheduler(session, api_client, pipeline, notifier)
        history = HistorySnapshot(session)
        snapshot_hour = get_settings().history_snapshot_hour

        def take_history_snapshot() -> None:
            if datetime.now().hour >= snapshot_hour and history.is_due():
                history.take()

        worker = cls()
        now = worker.clock()
        worker.add_task("import_tick", IMPORT_TICK_INTERVAL, imports.tick, now)
        worker.add_task("global_recents", GLOBAL_RECENTS_INTERVAL, pipeline.sync_global_recents, now)
        worker.add_task("new_chart_sets", NEW_CHART_SETS_INTERVAL, pipeline.sync_new_chart_sets, now)
        worker.add_task("history_snapshot", HISTORY_CHECK_INTERVAL, take_history_snapshot, now)
        worker.add_task(
            "status_sweep",
            STATUS_SWEEP_INTERVAL,
            pipeline.sync_chart_statuses,
            now + STATUS_SWEEP_FIRST_DELAY,
        )
        return worker

    def add_task(
        self,
        name: str,
        interval: float,
        func: Callable[[], Any],
        first_run: float | None = None,
    ) -> ScheduledTask:
        task = ScheduledTask(
            name=name,
            interval=interval,
            func=func,
            next_run=self.clock() if first_run is None else first_run,
        )
        self.tasks.append(task)
        return task

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_pending(self) -> int:
        """Run every due task once, in order.

        Returns:
            Number of tasks run.
        """
        ran = 0
        for task in self.tasks:
            if self.stopped:
                break
            if not task.is_due(self.clock()):
                continue
            try:
                task.func()
            except Exception:
                logger.exception(f"Scheduled task {task.name} failed")
            task.next_run = self.clock() + task.interval
            ran += 1
        return ran

    def seconds_until_next(self) -> float:
        if not self.tasks:
            return MAX_IDLE_SECONDS
        wait = min(task.next_run for task in self.tasks) - self.clock()
        return min(max(wait, 0.0), MAX_IDLE_SECONDS)

    def run_forever(self) -> None:
        """Run tasks until :meth:`stop` is called."""
        logger.info(f"Worker started with {len(self.tasks)} scheduled tasks")
        while not self.stopped:
            self.run_pending()
            self._stop_event.wait(self.seconds_until_next())
        logger.info("Worker stopped")

    def start(self) -> None:
        """Run the loop in a background thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="osu-complete-worker")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
