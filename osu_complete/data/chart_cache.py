"""Read-through cache of beatmapsets and beatmaps.

The cache mirrors what the osu! API reports for each beatmapset. A set is
written together with all of its beatmaps and converts in one transaction.
When a set's status leaves the leaderboard statuses (ranked, approved,
loved), every pass on it is deleted: only beatmaps that currently have a
leaderboard count towards completion.

Example:
    >>> from osu_complete.data.chart_cache import ChartCache
    >>> cache = ChartCache(session, OsuApiClient())
    >>> saved = cache.save_chart_set(1, index_for_search=True)
    >>> saved.affected_player_ids
    []
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert

from osu_complete.categories import LEADERBOARD_STATUSES
from osu_complete.data.checkpoint import Checkpoint, CheckpointManager
from osu_complete.data.db import transaction
from osu_complete.data.ledger import PassLedger
from osu_complete.data.models import Chart, ChartSearchEntry, ChartSet
from osu_complete.data.schema import to_ms
from osu_complete.logging import SUCCESS, WARN
from osu_complete.notify import MAP_COLOR, NullNotifier

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient
    from osu_complete.notify import Notifier

logger = logging.getLogger(__name__)

STATUS_SWEEP_CHECKPOINT = "map_status_sweep"

# Sets checked per beatmaps lookup during a status sweep
SWEEP_BATCH_SIZE = 50

MODE_LABELS = {"osu": "osu!", "taiko": "osu!taiko", "fruits": "osu!catch", "mania": "osu!mania"}


@dataclass
class SavedChartSet:
    """Outcome of saving one beatmapset.

    Attributes:
        set_id: Beatmapset ID.
        status: Status now stored.
        previous_status: Status cached before the save (None if new).
        chart_count: Beatmaps and converts written.
        affected_player_ids: Players whose passes were deleted.
    """

    set_id: int
    status: str
    previous_status: str | None
    chart_count: int
    affected_player_ids: list[int] = field(default_factory=list)

    @property
    def is_new(self) -> bool:
        return self.previous_status is None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status


@dataclass
class SweepResult:
    """Outcome of a status sweep over every stored set."""

    sets_checked: int = 0
    sets_updated: int = 0
    sets_missing: int = 0
    affected_player_ids: set[int] = field(default_factory=set)


def _chart_values(set_id: int, beatmap: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": beatmap["id"],
        "mode": beatmap["mode"],
        "set_id": set_id,
        "status": beatmap["status"],
        "name": beatmap.get("version") or "",
        "stars": beatmap.get("difficulty_rating") or 0.0,
        "is_convert": 1 if beatmap.get("convert") else 0,
        "duration_secs": beatmap.get("total_length") or 0,
        "cs": beatmap.get("cs"),
        "ar": beatmap.get("ar"),
        "od": beatmap.get("accuracy"),
        "hp": beatmap.get("drain"),
        "bpm": beatmap.get("bpm"),
    }


class ChartCache:
    """Keeps the ``beatmapsets``/``beatmaps`` tables in sync with the API."""

    def __init__(
        self,
        session: Session,
        api_client: OsuApiClient,
        notifier: Notifier | None = None,
    ) -> None:
        self.session = session
        self.api = api_client
        self.notifier = notifier or NullNotifier()
        self.ledger = PassLedger(session)
        self.checkpoints = CheckpointManager(session)

    # =========================================================================
    # Local reads
    # =========================================================================

    def get_status(self, set_id: int) -> str | None:
        """Cached status of a set, or None if it isn't stored."""
        return self.session.scalar(select(ChartSet.status).where(ChartSet.id == set_id))

    def get_chart(self, chart_id: int, mode: str | None = None) -> Chart | None:
        """Look up a cached beatmap, preferring its non-convert row."""
        stmt = select(Chart).where(Chart.id == chart_id)
        if mode is not None:
            stmt = stmt.where(Chart.mode == mode)
        return self.session.scalars(stmt.order_by(Chart.is_convert)).first()

    def count_charts(self) -> int:
        return self.session.scalar(select(func.count()).select_from(Chart)) or 0

    def stored_set_ids(self, ids: list[int]) -> set[int]:
        if not ids:
            return set()
        return set(self.session.scalars(select(ChartSet.id).where(ChartSet.id.in_(ids))))

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_chart_set(self, set_data: dict[str, Any], index_for_search: bool) -> int:
        """Write a set and all of its beatmaps and converts in one transaction.

        Args:
            set_data: Beatmapset as returned by ``OsuApiClient.get_beatmapset``.
            index_for_search: Whether to add the beatmaps to the search table.

        Returns:
            Number of beatmap rows written.
        """
        set_id = set_data["id"]
        set_values = {
            "id": set_id,
            "status": set_data["status"],
            "title": set_data.get("title") or "",
            "artist": set_data.get("artist") or "",
            "mapper": set_data.get("creator") or "",
            "time_ranked": to_ms(set_data.get("ranked_date") or set_data.get("submitted_date")),
        }
        beatmaps = [*set_data.get("beatmaps", []), *(set_data.get("converts") or [])]

        with transaction(self.session):
            set_stmt = insert(ChartSet).values(**set_values)
            self.session.execute(
                set_stmt.on_conflict_do_update(
                    index_elements=["id"],
                    set_={k: set_stmt.excluded[k] for k in set_values if k != "id"},
                )
            )
            for beatmap in beatmaps:
                values = _chart_values(set_id, beatmap)
                chart_stmt = insert(Chart).values(**values)
                self.session.execute(
                    chart_stmt.on_conflict_do_update(
                        index_elements=["id", "mode"],
                        set_={
                            k: chart_stmt.excluded[k]
                            for k in values
                            if k not in ("id", "mode")
                        },
                    )
                )
                if index_for_search:
                    self.session.execute(
                        insert(ChartSearchEntry)
                        .values(
                            map_id=beatmap["id"],
                            mode=beatmap["mode"],
                            title=set_values["title"],
                            artist=set_values["artist"],
                            name=values["name"],
                        )
                        .on_conflict_do_nothing()
                    )

        logger.info(
            f"Saved beatmapset {set_id} with {len(beatmaps)} beatmaps: "
            f"{set_values['artist']} - {set_values['title']}"
        )
        return len(beatmaps)

    def detect_status_change(self, set_id: int, new_status: str) -> bool:
        """Whether a fetched status differs from the cached one (or the set is new)."""
        return self.get_status(set_id) != new_status

    def apply_status_change(self, set_id: int, new_status: str) -> list[int]:
        """Delete every pass on a set whose new status has no leaderboard.

        Returns:
            Ids of the players who lost passes.
        """
        if new_status in LEADERBOARD_STATUSES:
            return []
        with transaction(self.session):
            player_ids = self.ledger.delete_for_set(set_id)
        if player_ids:
            logger.info(f"Deleted all passes for now {new_status} beatmapset {set_id}")
        return player_ids

    def save_chart_set(self, set_id: int, index_for_search: bool = True) -> SavedChartSet:
        """Fetch a set with converts from the API and store it.

        Raises:
            ExternalFetchError: If the set can't be fetched.
        """
        set_data = self.api.get_beatmapset(set_id)
        previous_status = self.get_status(set_id)
        chart_count = self.upsert_chart_set(set_data, index_for_search)

        saved = SavedChartSet(
            set_id=set_id,
            status=set_data["status"],
            previous_status=previous_status,
            chart_count=chart_count,
        )
        if saved.status_changed:
            saved.affected_player_ids = self.apply_status_change(set_id, saved.status)

        self._notify_saved(set_data, index_for_search)
        return saved

    # =========================================================================
    # Feeds
    # =========================================================================

    def fetch_new_chart_sets(self) -> list[SavedChartSet]:
        """Save sets from the ranked-desc search feed until a page has nothing new.

        Returns:
            The newly saved sets.
        """
        logger.info("Checking for new beatmaps...")
        saved: list[SavedChartSet] = []
        cursor: str | None = None

        while True:
            page = self.api.search_beatmapsets(cursor_string=cursor, sort="ranked_desc")
            cursor = page.get("cursor_string")
            beatmapsets = page.get("beatmapsets", [])

            ids = [s["id"] for s in beatmapsets]
            stored = self.stored_set_ids(ids)
            unseen = [i for i in ids if i not in stored]
            for set_id in unseen:
                saved.append(self.save_chart_set(set_id, index_for_search=True))

            if not cursor or not beatmapsets or not unseen:
                break

        if saved:
            logger.info(f"{SUCCESS} Saved {len(saved)} new beatmapsets")
        logger.info("Beatmap database is up to date")
        return saved

    def sweep_statuses(self, batch_size: int = SWEEP_BATCH_SIZE) -> SweepResult:
        """Re-check every stored set's status and re-save the changed ones.

        Progress is checkpointed by last set id after every batch, so an
        interrupted sweep continues where it stopped.
        """
        result = SweepResult()
        checkpoint = self.checkpoints.load(STATUS_SWEEP_CHECKPOINT)
        if checkpoint is None or checkpoint.status == "completed":
            checkpoint = Checkpoint(pipeline_name=STATUS_SWEEP_CHECKPOINT)
        elif checkpoint.last_id:
            logger.info(f"Resuming status sweep after beatmapset {checkpoint.last_id}")
        total_sets = self.session.scalar(select(func.count()).select_from(ChartSet)) or 0

        while True:
            rows = self.session.execute(
                select(ChartSet.id, func.min(Chart.id).label("chart_id"))
                .join(Chart, Chart.set_id == ChartSet.id)
                .where(ChartSet.id > checkpoint.last_id)
                .group_by(ChartSet.id)
                .order_by(ChartSet.id)
                .limit(batch_size)
            ).all()
            if not rows:
                break

            beatmaps = self.api.get_beatmaps([row.chart_id for row in rows])
            fetched = {b["beatmapset"]["id"]: b["beatmapset"]["status"] for b in beatmaps}

            for row in rows:
                set_id = row.id
                if set_id not in fetched:
                    logger.warning(f"{WARN} Couldn't fetch beatmapset {set_id} from osu! API")
                    result.sets_missing += 1
                    continue
                result.sets_checked += 1
                if not self.detect_status_change(set_id, fetched[set_id]):
                    continue
                saved = self.save_chart_set(set_id, index_for_search=False)
                result.sets_updated += 1
                result.affected_player_ids.update(saved.affected_player_ids)

            checkpoint.last_id = rows[-1].id
            checkpoint.total_processed += len(rows)
            self.checkpoints.save(checkpoint)
            logger.info(
                f"Checked beatmapset statuses "
                f"({checkpoint.total_processed}/{total_sets})"
            )

        checkpoint.status = "completed"
        checkpoint.last_id = 0
        checkpoint.total_processed = 0
        self.checkpoints.save(checkpoint)
        logger.info(
            f"{SUCCESS} Status sweep complete: {result.sets_checked} checked, "
            f"{result.sets_updated} updated, {result.sets_missing} missing"
        )
        return result

    # =========================================================================
    # Notifications
    # =========================================================================

    def _notify_saved(self, set_data: dict[str, Any], is_new: bool) -> None:
        set_id = set_data["id"]
        lines: list[str] = []
        beatmaps = set_data.get("beatmaps", [])
        for beatmap in beatmaps:
            lines.append(
                f"* **{MODE_LABELS.get(beatmap['mode'], beatmap['mode'])} "
                f"{(beatmap.get('difficulty_rating') or 0):.2f} ★** - "
                f"[{beatmap.get('version', '')}](https://osu.ppy.sh/beatmapsets/"
                f"{set_id}#{beatmap['mode']}/{beatmap['id']})"
            )
            if len("\n".join(lines)) > 1000:
                lines.pop()
                lines.append(f"... and {len(beatmaps) - len(lines)} more ...")
                break

        self.notifier.send_embeds("map", [{
            "author": {"name": "Saved new beatmapset" if is_new else "Updated saved beatmapset"},
            "title": f"{set_data.get('artist', '')} - {set_data.get('title', '')}",
            "url": f"https://osu.ppy.sh/beatmapsets/{set_id}",
            "fields": [
                {"name": "Status", "value": set_data["status"], "inline": True},
                {"name": "Mapper", "value": set_data.get("creator", ""), "inline": True},
                {"name": f"Difficulties ({len(beatmaps)})", "value": "\n".join(lines)},
            ],
            "thumbnail": {"url": f"https://assets.ppy.sh/beatmaps/{set_id}/covers/list.jpg"},
            "color": MAP_COLOR,
        }])
