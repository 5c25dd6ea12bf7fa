"""Read API over the aggregated tables.

These functions are what a front end calls: completion stats per category,
yearly breakdowns, leaderboards, import progress and the queue. They only
read; every value is derived from ``category_stats``,
``category_stats_yearly``, ``players`` and ``import_queue``.

Example:
    >>> from osu_complete.stats.read import get_completion_stats
    >>> stats = get_completion_stats(session, 2, "osu-ranked")
    >>> stats.percentage_completed
    12.5
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select

from osu_complete.categories import get_definition
from osu_complete.config import get_settings
from osu_complete.data.models import (
    CategoryStat,
    CategoryStatYearly,
    ImportTask,
    Player,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.config import Settings


def secs_to_xp(seconds: int) -> int:
    """Completion xp for a duration: one point per ten seconds."""
    return round(seconds / 10)


def _percent(part: float, whole: float) -> float:
    return (part / whole) * 100 if part > 0 and whole > 0 else 0.0


# =============================================================================
# Result types
# =============================================================================


@dataclass
class CompletionStats:
    """A player's standing in one category."""

    count_completed: int = 0
    count_total: int = 0
    percentage_completed: float = 0.0
    xp: int = 0
    xp_total: int = 0
    xp_remaining: int = 0
    secs_spent: int = 0
    secs_total: int = 0
    secs_remaining: int = 0
    rank: int = 0
    best_rank: int = 0
    best_rank_time: int = 0
    best_percentage_completed: float = 0.0
    best_percentage_completed_time: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class YearlyStats:
    """A player's completion of one ranked year in one category."""

    year: int
    count_completed: int
    count_total: int
    xp: int
    xp_total: int
    secs_completed: int
    secs_total: int
    map_percentage_completed: float
    time_percentage_completed: float


@dataclass
class ImportStatus:
    """Queue state of a player's import.

    Attributes:
        queued: Whether the player has a queue entry.
        position: Entries ahead in the queue, at least 1.
        percent_complete: Progress of the current step.
        passes_imported: New passes saved so far.
        estimated_seconds_remaining: Time until this import completes,
            including everything queued ahead of it.
    """

    queued: bool
    position: int = 0
    percent_complete: float = 0.0
    passes_imported: int = 0
    estimated_seconds_remaining: int = 0
    is_full: bool = False
    time_queued: int = 0
    time_started: int = 0


@dataclass
class LeaderboardEntry:
    rank: int
    player_id: int
    name: str
    avatar_url: str | None
    country_code: str | None
    stats: CompletionStats


@dataclass
class Leaderboard:
    category_id: str
    total_players: int
    entries: list[LeaderboardEntry] = field(default_factory=list)


# =============================================================================
# Completion stats
# =============================================================================


def compute_rank(
    session: Session,
    player_id: int,
    category_id: str,
    seconds: int,
    last_pass_time: int,
) -> int:
    """Rank among every tracked player, starting at 1.

    Ordered by seconds descending, then earlier ``last_pass_time``, then
    lower player id, so no two players share a rank.
    """
    ahead = session.scalar(
        select(func.count())
        .select_from(CategoryStat)
        .join(Player, Player.id == CategoryStat.player_id)
        .where(CategoryStat.category_id == category_id)
        .where(CategoryStat.player_id != 0)
        .where(
            or_(
                CategoryStat.seconds > seconds,
                and_(
                    CategoryStat.seconds == seconds,
                    or_(
                        Player.last_pass_time < last_pass_time,
                        and_(
                            Player.last_pass_time == last_pass_time,
                            Player.id < player_id,
                        ),
                    ),
                ),
            )
        )
    )
    return (ahead or 0) + 1


def get_category_totals(session: Session, category_id: str) -> tuple[int, int]:
    """``(count, seconds)`` of every stored beatmap in a category."""
    row = session.get(CategoryStat, (0, category_id))
    return (row.count, row.seconds) if row else (0, 0)


def get_completion_stats(
    session: Session,
    player_id: int,
    category_id: str,
) -> CompletionStats:
    """Completion stats for one player in one category.

    A player without a stats row gets zeroes against the category totals.

    Raises:
        InvalidCategory: If the category id is unknown.
    """
    get_definition(category_id)
    total_count, total_seconds = get_category_totals(session, category_id)
    stats = CompletionStats(
        count_total=total_count,
        xp_total=secs_to_xp(total_seconds),
        xp_remaining=secs_to_xp(total_seconds),
        secs_total=total_seconds,
        secs_remaining=total_seconds,
    )

    row = session.get(CategoryStat, (player_id, category_id))
    if row is None or player_id == 0:
        return stats

    player = session.get(Player, player_id)
    stats.count_completed = row.count
    stats.secs_spent = row.seconds
    stats.secs_remaining = total_seconds - row.seconds
    stats.xp = secs_to_xp(row.seconds)
    stats.xp_remaining = secs_to_xp(total_seconds - row.seconds)
    stats.percentage_completed = _percent(row.seconds, total_seconds)
    if player is not None:
        stats.rank = compute_rank(
            session, player_id, category_id, row.seconds, player.last_pass_time
        )
    stats.best_rank = row.best_rank
    stats.best_rank_time = row.best_rank_time
    stats.best_percentage_completed = row.best_percent
    stats.best_percentage_completed_time = row.best_percent_time
    return stats


def get_yearly_stats(
    session: Session,
    player_id: int,
    category_id: str,
) -> list[YearlyStats]:
    """Per ranked year completion for one player, skipping empty years."""
    get_definition(category_id)
    totals = session.execute(
        select(CategoryStatYearly.year, CategoryStatYearly.count, CategoryStatYearly.seconds)
        .where(CategoryStatYearly.player_id == 0)
        .where(CategoryStatYearly.category_id == category_id)
        .order_by(CategoryStatYearly.year)
    ).all()
    completed = {
        row.year: row
        for row in session.execute(
            select(CategoryStatYearly.year, CategoryStatYearly.count, CategoryStatYearly.seconds)
            .where(CategoryStatYearly.player_id == player_id)
            .where(CategoryStatYearly.category_id == category_id)
        )
    }

    entries: list[YearlyStats] = []
    for total in totals:
        if not total.count:
            continue
        done = completed.get(total.year)
        count = done.count if done else 0
        seconds = done.seconds if done else 0
        entries.append(
            YearlyStats(
                year=total.year,
                count_completed=count,
                count_total=total.count,
                xp=secs_to_xp(seconds),
                xp_total=secs_to_xp(total.seconds),
                secs_completed=seconds,
                secs_total=total.seconds,
                map_percentage_completed=_percent(count, total.count),
                time_percentage_completed=_percent(seconds, total.seconds),
            )
        )
    return entries


# =============================================================================
# Leaderboard
# =============================================================================


def get_leaderboard(
    session: Session,
    category_id: str,
    limit: int = 100,
    offset: int = 0,
) -> Leaderboard:
    """One page of a category's leaderboard."""
    get_definition(category_id)
    total_players = session.scalar(
        select(func.count())
        .select_from(CategoryStat)
        .join(Player, Player.id == CategoryStat.player_id)
        .where(CategoryStat.category_id == category_id)
    ) or 0

    players = session.scalars(
        select(Player)
        .join(CategoryStat, CategoryStat.player_id == Player.id)
        .where(CategoryStat.category_id == category_id)
        .order_by(CategoryStat.seconds.desc(), Player.last_pass_time, Player.id)
        .limit(limit)
        .offset(offset)
    ).all()

    leaderboard = Leaderboard(category_id=category_id, total_players=total_players)
    for i, player in enumerate(players):
        leaderboard.entries.append(
            LeaderboardEntry(
                rank=offset + i + 1,
                player_id=player.id,
                name=player.name,
                avatar_url=player.avatar_url,
                country_code=player.country_code,
                stats=get_completion_stats(session, player.id, category_id),
            )
        )
    return leaderboard


# =============================================================================
# Import queue
# =============================================================================


def _remaining_seconds(task: ImportTask, settings: Settings) -> float:
    done = task.source_total_count * (task.percent_complete / 100)
    remaining = max(task.source_total_count - done, 0)
    per_minute = settings.scores_per_minute_full if task.is_full else settings.scores_per_minute
    return remaining / (per_minute / 60)


def get_import_status(session: Session, player_id: int) -> ImportStatus:
    """Where a player is in the import queue and how long is left."""
    task = session.get(ImportTask, player_id)
    if task is None:
        return ImportStatus(queued=False)

    settings = get_settings()
    ahead = session.scalars(
        select(ImportTask).where(ImportTask.time_queued < task.time_queued)
    ).all()
    seconds = sum(_remaining_seconds(t, settings) for t in [*ahead, task])
    return ImportStatus(
        queued=True,
        position=len(ahead) or 1,
        percent_complete=task.percent_complete,
        passes_imported=task.passes_imported,
        estimated_seconds_remaining=round(seconds),
        is_full=task.is_full,
        time_queued=task.time_queued,
        time_started=task.time_started,
    )


def queue_overview(session: Session) -> dict[str, list[Player]]:
    """Queued players split into ``in_progress`` and ``waiting``."""
    rows = session.execute(
        select(ImportTask, Player)
        .join(Player, Player.id == ImportTask.player_id)
        .order_by(ImportTask.time_queued)
    ).all()
    overview: dict[str, list[Player]] = {"in_progress": [], "waiting": []}
    for task, player in rows:
        key = "in_progress" if task.is_started else "waiting"
        overview[key].append(player)
    return overview
