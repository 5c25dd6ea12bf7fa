"""Background work for osu!complete.

Submodules:
    imports: Import queue with single-flight execution
    worker: Loop running the recurring sync and maintenance tasks

Example:
    >>> from osu_complete.scheduler import Worker
    >>> Worker.from_settings(session, OsuApiClient()).run_forever()
"""
from __future__ import annotations

from osu_complete.scheduler.imports import FULL_IMPORT_DELAY_MS, ImportScheduler
from osu_complete.scheduler.worker import ScheduledTask, Worker

__all__ = [
    "FULL_IMPORT_DELAY_MS",
    "ImportScheduler",
    "ScheduledTask",
    "Worker",
]
