"""Daily history snapshots of every player's rank and percentage.

A snapshot is taken at most once per calendar date. Rows are insert-or-ignore
on ``(player_id, category_id, date)``, so running the snapshot twice on one
day leaves the first result in place.

Players who have never completed an import, or whose import is running,
are left out: their stats are provisional.

Example:
    >>> from osu_complete.stats.history import HistorySnapshot
    >>> HistorySnapshot(session).take()
    1240
"""
from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Any

import pandas as pd
from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.sqlite import insert

from osu_complete.categories import get_definition
from osu_complete.data.checkpoint import CheckpointManager
from osu_complete.data.db import transaction
from osu_complete.data.models import CategoryStat, HistorySnapshotRow, ImportTask, Player
from osu_complete.data.schema import now_ms
from osu_complete.logging import SUCCESS
from osu_complete.stats.read import get_completion_stats, secs_to_xp

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

HISTORY_CHECKPOINT = "history_snapshot"


class HistorySnapshot:
    """Materializes the daily ``category_stats_history`` rows."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.checkpoints = CheckpointManager(session)

    def last_snapshot_date(self) -> str | None:
        return self.checkpoints.get_cursor(HISTORY_CHECKPOINT)

    def is_due(self, today: date | None = None) -> bool:
        today = today or date.today()
        return self.last_snapshot_date() != today.isoformat()

    def build_frame(self) -> pd.DataFrame:
        """Current stats of every eligible player, ranked within each category.

        Returns:
            DataFrame with ``player_id``, ``category_id``, ``count``,
            ``seconds``, ``percent`` and ``rank`` columns.
        """
        rows = self.session.execute(
            select(
                CategoryStat.player_id,
                CategoryStat.category_id,
                CategoryStat.count,
                CategoryStat.seconds,
                Player.last_pass_time,
            )
            .join(Player, Player.id == CategoryStat.player_id)
            .outerjoin(ImportTask, ImportTask.player_id == CategoryStat.player_id)
            .where(CategoryStat.player_id != 0)
            .where(Player.last_import_time.is_not(None))
            .where(Player.last_import_time != 0)
            .where(or_(ImportTask.player_id.is_(None), ImportTask.time_started == 0))
        ).all()
        frame = pd.DataFrame(
            [tuple(row) for row in rows],
            columns=["player_id", "category_id", "count", "seconds", "last_pass_time"],
        )
        if frame.empty:
            return frame.assign(percent=pd.Series(dtype=float), rank=pd.Series(dtype=int))

        totals = dict(
            self.session.execute(
                select(CategoryStat.category_id, CategoryStat.seconds).where(
                    CategoryStat.player_id == 0
                )
            ).all()
        )
        frame = frame.sort_values(
            ["category_id", "seconds", "last_pass_time", "player_id"],
            ascending=[True, False, True, True],
        ).reset_index(drop=True)
        frame["rank"] = frame.groupby("category_id").cumcount() + 1
        total_seconds = frame["category_id"].map(totals).fillna(0)
        frame["percent"] = (frame["seconds"] / total_seconds.where(total_seconds > 0) * 100).fillna(0.0)
        return frame.drop(columns=["last_pass_time"])

    def take(self, today: date | None = None, force: bool = False) -> int:
        """Write today's snapshot if it hasn't been taken yet.

        Args:
            today: Date to record (defaults to today).
            force: Write even if the checkpoint says today is done. Existing
                rows for the date are still never overwritten.

        Returns:
            Number of rows written.
        """
        today = today or date.today()
        date_string = today.isoformat()
        if not force and not self.is_due(today):
            logger.debug(f"History snapshot for {date_string} already taken")
            return 0

        frame = self.build_frame()
        saved_at = now_ms()
        written = 0
        with transaction(self.session):
            for record in frame.to_dict("records"):
                result = self.session.execute(
                    insert(HistorySnapshotRow)
                    .values(
                        player_id=int(record["player_id"]),
                        category_id=record["category_id"],
                        date=date_string,
                        count=int(record["count"]),
                        seconds=int(record["seconds"]),
                        percent=float(record["percent"]),
                        rank=int(record["rank"]),
                        saved_at=saved_at,
                    )
                    .on_conflict_do_nothing()
                )
                written += result.rowcount
        self.checkpoints.save_cursor(HISTORY_CHECKPOINT, date_string)
        logger.info(f"{SUCCESS} Saved history snapshot for {date_string} ({written} rows)")
        return written


def get_history(
    session: Session,
    player_id: int,
    category_id: str,
    days: int = 90,
) -> list[dict[str, Any]]:
    """Daily series for a player in a category, ending with a live "now" point.

    Returns:
        Up to ``days`` entries, oldest first.
    """
    get_definition(category_id)
    rows = session.scalars(
        select(HistorySnapshotRow)
        .where(
            and_(
                HistorySnapshotRow.player_id == player_id,
                HistorySnapshotRow.category_id == category_id,
            )
        )
        .order_by(HistorySnapshotRow.date)
    ).all()
    entries = [
        {
            "date": row.date,
            "count_completed": row.count,
            "xp": secs_to_xp(row.seconds),
            "percentage_completed": row.percent,
            "rank": row.rank,
            "time_saved": row.saved_at,
        }
        for row in rows
    ]

    current = get_completion_stats(session, player_id, category_id)
    entries.append({
        "date": "now",
        "count_completed": current.count_completed,
        "xp": current.xp,
        "percentage_completed": current.percentage_completed,
        "rank": current.rank,
        "time_saved": now_ms(),
    })
    return entries[-days:]
