"""Completion stats for osu!complete.

Submodules:
    aggregation: Recomputes category totals, bests and milestones
    milestones: Stepped threshold detection
    read: Read API for stats, leaderboards and the import queue
    history: Daily rank and percentage snapshots

Example:
    >>> from osu_complete.stats import StatsEngine, get_completion_stats
    >>> StatsEngine(session).recompute(2)
    >>> get_completion_stats(session, 2, "osu-ranked").rank
    14
"""
from __future__ import annotations

from osu_complete.stats.aggregation import GLOBAL_PLAYER_ID, StatsEngine
from osu_complete.stats.history import HistorySnapshot, get_history
from osu_complete.stats.milestones import Milestone, detect_milestones, floor_to_nearest
from osu_complete.stats.read import (
    CompletionStats,
    ImportStatus,
    Leaderboard,
    LeaderboardEntry,
    YearlyStats,
    compute_rank,
    get_completion_stats,
    get_import_status,
    get_leaderboard,
    get_yearly_stats,
    queue_overview,
    secs_to_xp,
)

__all__ = [
    "GLOBAL_PLAYER_ID",
    "StatsEngine",
    "HistorySnapshot",
    "get_history",
    "Milestone",
    "detect_milestones",
    "floor_to_nearest",
    "CompletionStats",
    "ImportStatus",
    "Leaderboard",
    "LeaderboardEntry",
    "YearlyStats",
    "compute_rank",
    "get_completion_stats",
    "get_import_status",
    "get_leaderboard",
    "get_yearly_stats",
    "queue_overview",
    "secs_to_xp",
]
