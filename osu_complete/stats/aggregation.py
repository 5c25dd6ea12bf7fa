"""Stats aggregation engine.

Recomputes a player's completion totals in every category from a single
pass over their ledger rows (or, for the global pseudo-player 0, over every
stored beatmap). Each row is tested against every category definition, so
the ledger is read once regardless of how many categories exist.

After the totals are written the engine updates personal bests, records
first full completions and detects milestones. The last two are skipped
for forced recomputes, which follow imports and maintenance and must not
announce historical progress as new.

Example:
    >>> from osu_complete.stats.aggregation import StatsEngine
    >>> engine = StatsEngine(session)
    >>> engine.recompute(0)            # refresh category totals
    >>> milestones = engine.recompute(2)
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from osu_complete.categories import DEFINITIONS, category_name, matches
from osu_complete.config import get_settings
from osu_complete.data.db import transaction
from osu_complete.data.ledger import FIRST_RANKED_YEAR, PassLedger
from osu_complete.data.models import (
    CategoryStat,
    CategoryStatYearly,
    FullCompletion,
    ImportTask,
    Player,
)
from osu_complete.data.schema import now_ms
from osu_complete.exceptions import PlayerNotFound
from osu_complete.notify import MILESTONE_COLOR, NullNotifier
from osu_complete.stats.milestones import Milestone, detect_milestones
from osu_complete.stats.read import (
    CompletionStats,
    YearlyStats,
    get_completion_stats,
    get_yearly_stats,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.notify import Notifier

logger = logging.getLogger(__name__)

GLOBAL_PLAYER_ID = 0


class StatsEngine:
    """Recomputes and stores category stats.

    Attributes:
        session: Database session; each recompute commits its own transactions.
        notifier: Where milestone announcements are sent.
    """

    def __init__(self, session: Session, notifier: Notifier | None = None) -> None:
        self.session = session
        self.notifier = notifier or NullNotifier()
        self.ledger = PassLedger(session)
        self.logger = logging.getLogger(self.__class__.__name__)

    def is_importing(self, player_id: int) -> bool:
        task = self.session.get(ImportTask, player_id)
        return task is not None and task.is_started

    def recompute(self, player_id: int, force: bool = False) -> list[Milestone]:
        """Recompute every category for one player.

        Args:
            player_id: Player to recompute, or 0 for the category totals.
            force: Recompute even while the player is importing, and skip
                full completion and milestone bookkeeping.

        Returns:
            Milestones reached by this recompute.

        Raises:
            PlayerNotFound: If the player isn't stored.
        """
        is_global = player_id == GLOBAL_PLAYER_ID
        player: Player | None = None
        if not is_global:
            player = self.session.get(Player, player_id)
            if player is None:
                raise PlayerNotFound(player_id)
            if not force and self.is_importing(player_id):
                self.logger.info(f"{player.name} is currently being imported, skipping stats update")
                return []

        old_stats: dict[str, CompletionStats] = {}
        old_yearly: dict[str, list[YearlyStats]] = {}
        if not is_global:
            for definition in DEFINITIONS:
                old_stats[definition.id] = get_completion_stats(self.session, player_id, definition.id)
                old_yearly[definition.id] = get_yearly_stats(self.session, player_id, definition.id)

        totals, yearly = self._tally(player_id)
        self._write_totals(player_id, totals, yearly)
        label = player.name if player else "all beatmaps"
        self.logger.info(f"Updated stats in {len(DEFINITIONS)} categories for {label}")

        if is_global:
            return []

        new_stats = {
            definition.id: get_completion_stats(self.session, player_id, definition.id)
            for definition in DEFINITIONS
        }
        self._update_bests(player_id, old_stats, new_stats)

        if force:
            return []

        milestones: list[Milestone] = []
        with transaction(self.session):
            for definition in DEFINITIONS:
                old, new = old_stats[definition.id], new_stats[definition.id]
                if new.percentage_completed >= 100 and old.percentage_completed < 100:
                    self.session.add(
                        FullCompletion(
                            player_id=player_id,
                            category_id=definition.id,
                            count=new.count_completed,
                            seconds=new.secs_spent,
                            time=now_ms(),
                        )
                    )
                    self.logger.info(f"{label} fully completed {definition.id}")
                milestones.extend(
                    detect_milestones(
                        definition.id,
                        old,
                        new,
                        old_yearly[definition.id],
                        get_yearly_stats(self.session, player_id, definition.id),
                    )
                )

        if milestones:
            self._announce(player, milestones, new_stats)
        return milestones

    def recompute_all(self) -> int:
        """Force a recompute of the totals and every player.

        Returns:
            Number of players recomputed, excluding the totals.
        """
        self.recompute(GLOBAL_PLAYER_ID, force=True)
        player_ids = list(self.session.scalars(select(Player.id).order_by(Player.id)))
        self.logger.info(f"Updating category stats for {len(player_ids)} players...")
        for player_id in player_ids:
            self.recompute(player_id, force=True)
        return len(player_ids)

    # =========================================================================
    # Steps
    # =========================================================================

    def _tally(
        self, player_id: int
    ) -> tuple[dict[str, list[int]], dict[str, dict[int, list[int]]]]:
        """Single pass over the ledger into per-category and per-year sums."""
        totals: dict[str, list[int]] = {d.id: [0, 0] for d in DEFINITIONS}
        yearly: dict[str, dict[int, list[int]]] = {
            d.id: defaultdict(lambda: [0, 0]) for d in DEFINITIONS
        }
        for row in self.ledger.iter_stat_rows(player_id):
            seconds = row["duration_secs"] or 0
            for definition in DEFINITIONS:
                if not matches(row, definition):
                    continue
                total = totals[definition.id]
                total[0] += 1
                total[1] += seconds
                bucket = yearly[definition.id][row["year"]]
                bucket[0] += 1
                bucket[1] += seconds
        return totals, yearly

    def _write_totals(
        self,
        player_id: int,
        totals: dict[str, list[int]],
        yearly: dict[str, dict[int, list[int]]],
    ) -> None:
        current_year = datetime.now(timezone.utc).year
        with transaction(self.session):
            for definition in DEFINITIONS:
                count, seconds = totals[definition.id]
                stmt = insert(CategoryStat).values(
                    player_id=player_id,
                    category_id=definition.id,
                    count=count,
                    seconds=seconds,
                )
                self.session.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["player_id", "category_id"],
                        set_={"count": stmt.excluded.count, "seconds": stmt.excluded.seconds},
                    )
                )
                for year in range(FIRST_RANKED_YEAR, current_year + 1):
                    year_count, year_seconds = yearly[definition.id].get(year, (0, 0))
                    year_stmt = insert(CategoryStatYearly).values(
                        player_id=player_id,
                        category_id=definition.id,
                        year=year,
                        count=year_count,
                        seconds=year_seconds,
                    )
                    self.session.execute(
                        year_stmt.on_conflict_do_update(
                            index_elements=["player_id", "category_id", "year"],
                            set_={
                                "count": year_stmt.excluded.count,
                                "seconds": year_stmt.excluded.seconds,
                            },
                        )
                    )

    def _update_bests(
        self,
        player_id: int,
        old_stats: dict[str, CompletionStats],
        new_stats: dict[str, CompletionStats],
    ) -> None:
        """Record improved ranks and percentages; bests never regress."""
        now = now_ms()
        with transaction(self.session):
            for category_id, new in new_stats.items():
                old = old_stats[category_id]
                values: dict[str, Any] = {}
                if new.rank > 0 and (old.best_rank == 0 or new.rank <= old.best_rank):
                    values["best_rank"] = new.rank
                    values["best_rank_time"] = now
                if new.percentage_completed > 0 and (
                    old.best_percentage_completed == 0
                    or new.percentage_completed >= old.best_percentage_completed
                ):
                    values["best_percent"] = new.percentage_completed
                    values["best_percent_time"] = now
                if not values:
                    continue
                row = self.session.get(CategoryStat, (player_id, category_id))
                for key, value in values.items():
                    setattr(row, key, value)
                _mirror_bests(new, values)

    # =========================================================================
    # Notifications
    # =========================================================================

    def _announce(
        self,
        player: Player | None,
        milestones: list[Milestone],
        stats: dict[str, CompletionStats],
    ) -> None:
        if player is None:
            return
        settings = get_settings()
        player_url = f"{settings.base_url}/u/{player.id}"
        embeds = []
        for milestone in milestones:
            current = stats[milestone.category_id]
            self.logger.info(
                f"Milestone for {player.name}: "
                f"{milestone.describe(milestone.category_id)}"
            )
            embeds.append({
                "author": {
                    "name": player.name,
                    "icon_url": player.avatar_url,
                    "url": f"{player_url}/{milestone.category_id}",
                },
                "title": milestone.describe(category_name(milestone.category_id).lower()),
                "fields": [
                    {"name": "rank", "value": f"#{current.rank:,}", "inline": True},
                    {"name": "completion xp", "value": f"{current.xp:,}", "inline": True},
                    {"name": "maps passed", "value": f"{current.count_completed:,}", "inline": True},
                ],
                "footer": {"text": "osu!complete"},
                "color": MILESTONE_COLOR,
            })
        self.notifier.send_embeds("milestone", embeds)


def _mirror_bests(stats: CompletionStats, values: dict[str, Any]) -> None:
    """Mirror freshly written bests onto an in-memory stats object."""
    if "best_rank" in values:
        stats.best_rank = values["best_rank"]
        stats.best_rank_time = values["best_rank_time"]
    if "best_percent" in values:
        stats.best_percentage_completed = values["best_percent"]
        stats.best_percentage_completed_time = values["best_percent_time"]
