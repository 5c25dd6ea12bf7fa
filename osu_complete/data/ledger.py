"""Pass ledger: the append-mostly log of player clears.

A pass is unique per ``(player_id, chart_id, mode)``. Inserts are
insert-or-ignore, so replaying a batch of scores never duplicates a row
and never moves ``time_cleared`` forward. Rows are only deleted in bulk,
per beatmapset, when the set loses its leaderboard.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert

from osu_complete.data.models import Chart, ChartSet, Pass
from osu_complete.exceptions import ConsistencyViolation
from osu_complete.logging import WARN

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Beatmaps were first ranked in 2007
FIRST_RANKED_YEAR = 2007

# Rows fetched per round trip while streaming
STREAM_CHUNK_SIZE = 1000


@dataclass(frozen=True)
class PassRecord:
    """A pass ready to be written."""

    player_id: int
    chart_id: int
    mode: str
    set_id: int
    time_cleared: int


def ranked_year(time_ranked: int | None) -> int:
    """Calendar year (UTC) a beatmapset was ranked in."""
    if not time_ranked:
        return FIRST_RANKED_YEAR
    return datetime.fromtimestamp(time_ranked / 1000, tz=timezone.utc).year


class PassLedger:
    """Reads and writes the ``passes`` table through a session.

    Writes are flushed but not committed; callers own the transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def insert(self, record: PassRecord) -> bool:
        """Insert a pass unless one already exists.

        Returns:
            True if a new row was written.
        """
        stmt = (
            insert(Pass)
            .values(
                player_id=record.player_id,
                chart_id=record.chart_id,
                mode=record.mode,
                set_id=record.set_id,
                time_cleared=record.time_cleared,
            )
            .on_conflict_do_nothing(index_elements=["player_id", "chart_id", "mode"])
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def insert_many(self, records: Iterable[PassRecord]) -> int:
        """Insert passes, ignoring existing ones. Returns the number written."""
        return sum(1 for record in records if self.insert(record))

    def exists(self, player_id: int, chart_id: int, mode: str) -> bool:
        return self.session.get(Pass, (player_id, chart_id, mode)) is not None

    def count(self, player_id: int | None = None) -> int:
        stmt = select(func.count()).select_from(Pass)
        if player_id is not None:
            stmt = stmt.where(Pass.player_id == player_id)
        return self.session.scalar(stmt) or 0

    def delete_for_set(self, set_id: int) -> list[int]:
        """Delete every pass on a beatmapset.

        Returns:
            Distinct ids of the players who lost passes.
        """
        player_ids = list(
            self.session.scalars(
                select(Pass.player_id).where(Pass.set_id == set_id).distinct()
            )
        )
        if player_ids:
            self.session.execute(delete(Pass).where(Pass.set_id == set_id))
            logger.info(
                f"Deleted passes on beatmapset {set_id} for {len(player_ids)} players"
            )
        return player_ids

    def iter_stat_rows(self, player_id: int) -> Iterator[dict[str, Any]]:
        """Stream the rows a stats recompute needs, exactly once each.

        For ``player_id == 0`` every stored beatmap is yielded; otherwise
        each of the player's passes joined to its beatmap. A pass whose
        beatmap no longer resolves is logged and skipped.

        Yields:
            Dicts with ``mode``, ``status``, ``is_convert``, ``cs``, ``ar``,
            ``od``, ``hp``, ``duration_secs`` and ``year``.
        """
        columns = (
            Chart.id,
            Chart.mode,
            Chart.status,
            Chart.is_convert,
            Chart.cs,
            Chart.ar,
            Chart.od,
            Chart.hp,
            Chart.duration_secs,
            ChartSet.time_ranked,
        )
        if player_id == 0:
            stmt = select(*columns).join(ChartSet, Chart.set_id == ChartSet.id)
        else:
            stmt = (
                select(Pass.chart_id, Pass.mode.label("pass_mode"), *columns)
                .select_from(Pass)
                .outerjoin(Chart, (Pass.chart_id == Chart.id) & (Pass.mode == Chart.mode))
                .outerjoin(ChartSet, Chart.set_id == ChartSet.id)
                .where(Pass.player_id == player_id)
            )

        result = self.session.execute(stmt.execution_options(yield_per=STREAM_CHUNK_SIZE))
        for row in result:
            values = row._asdict()
            if values["id"] is None:
                violation = ConsistencyViolation(
                    f"Pass of player {player_id} references beatmap "
                    f"{values['chart_id']} ({values['pass_mode']}) which is not stored"
                )
                logger.warning(f"{WARN} {violation}")
                continue
            yield {
                "mode": values["mode"],
                "status": values["status"],
                "is_convert": values["is_convert"],
                "cs": values["cs"],
                "ar": values["ar"],
                "od": values["od"],
                "hp": values["hp"],
                "duration_secs": values["duration_secs"],
                "year": ranked_year(values["time_ranked"]),
            }
