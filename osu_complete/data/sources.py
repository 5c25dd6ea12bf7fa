"""Score sources feeding the pass ingestion routine.

Every way of discovering passes is a :class:`ScoreSource`. A source yields
:class:`ScoreBatch` objects of normalized :class:`ScoreRecord` values; the
sync pipeline saves each batch and then calls ``source.commit(batch)`` so
the source can persist its position. A position is therefore never
advanced past scores that weren't saved.

Sources:
    GlobalRecentSource: cursor feed of everyone's recent scores, per mode.
    PlayerRecentSource: one player's recent passes in every mode.
    MostPlayedSource: incremental import from a player's most played list.
    ChartSweepSource: full import checking every stored beatmapset.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from osu_complete.categories import LEADERBOARD_STATUSES
from osu_complete.data.api import RULESETS, OsuApiNotFoundError
from osu_complete.data.models import Chart, ChartSet
from osu_complete.data.schema import now_ms, to_ms
from osu_complete.exceptions import ConsistencyViolation
from osu_complete.logging import WARN

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient
    from osu_complete.data.chart_cache import ChartCache
    from osu_complete.data.checkpoint import CheckpointManager

logger = logging.getLogger(__name__)

# Global recents pages hold up to 1000 scores; more than this means the
# feed is behind and should be polled again straight away
GLOBAL_SATURATION_THRESHOLD = 800

RECENT_PAGE_SIZE = 50
MOST_PLAYED_PAGE_SIZE = 100
SETS_PER_BATCH = 50


def global_recents_checkpoint(mode: str) -> str:
    return f"global_recents:{mode}"


# =============================================================================
# Records and batches
# =============================================================================


@dataclass(frozen=True)
class ScoreRecord:
    """A normalized "player passed beatmap" observation.

    Attributes:
        player_id: Player who set the score.
        chart_id: Beatmap ID.
        mode: Mode the score was set in (``osu``, ``taiko``, ``fruits``, ``mania``).
        time_cleared: When the score was set, epoch ms.
        set_id: Beatmapset ID if the source knows it.
        chart_status: Beatmap status if the source knows it; when it matches
            the cache the beatmap isn't fetched again.
    """

    player_id: int
    chart_id: int
    mode: str
    time_cleared: int
    set_id: int | None = None
    chart_status: str | None = None

    @classmethod
    def from_api_score(cls, score: dict[str, Any]) -> ScoreRecord:
        """Normalize a score object from the scores endpoints."""
        ruleset = score.get("ruleset_id")
        mode = RULESETS[ruleset] if isinstance(ruleset, int) else score.get("mode", "osu")
        beatmap = score.get("beatmap") or {}
        time_cleared = to_ms(score.get("ended_at") or score.get("started_at")) or now_ms()
        return cls(
            player_id=score["user_id"],
            chart_id=score.get("beatmap_id") or beatmap["id"],
            mode=mode,
            time_cleared=time_cleared,
            set_id=beatmap.get("beatmapset_id"),
            chart_status=beatmap.get("status"),
        )


@dataclass
class ScoreBatch:
    """A unit of work from a source.

    Attributes:
        records: Scores to save.
        offset: Source position after this batch.
        last_set_id: Last beatmapset covered (imports only).
        cursor: Feed cursor after this batch (cursor feeds only).
        mode: Mode the batch was fetched for, if any.
    """

    records: list[ScoreRecord] = field(default_factory=list)
    offset: int = 0
    last_set_id: int = 0
    cursor: str | None = None
    mode: str | None = None


class ScoreSource(ABC):
    """A producer of score batches.

    Attributes:
        name: Label used in logs.
        sets_saved: Beatmapsets the source cached on its own while reading;
            the category totals are stale when this is non-zero.
    """

    name: str = "source"
    sets_saved: int = 0

    @abstractmethod
    def batches(self) -> Iterator[ScoreBatch]:
        """Yield batches in order. May raise ``ExternalFetchError``."""

    def commit(self, batch: ScoreBatch) -> None:
        """Persist the position reached by a saved batch."""
        return None


# =============================================================================
# Feeds
# =============================================================================


class GlobalRecentSource(ScoreSource):
    """Recent passes from every player, one cursor per mode.

    Attributes:
        saturated: Set once any page was large enough to suggest more
            unseen scores are waiting.
    """

    name = "global_recents"

    def __init__(
        self,
        api_client: OsuApiClient,
        checkpoints: CheckpointManager,
        modes: tuple[str, ...] = RULESETS,
    ) -> None:
        self.api = api_client
        self.checkpoints = checkpoints
        self.modes = modes
        self.saturated = False

    def batches(self) -> Iterator[ScoreBatch]:
        for mode in self.modes:
            cursor = self.checkpoints.get_cursor(global_recents_checkpoint(mode))
            page = self.api.get_scores(mode, cursor_string=cursor)
            scores = page.get("scores", [])
            if len(scores) > GLOBAL_SATURATION_THRESHOLD:
                self.saturated = True
            logger.debug(f"Fetched {len(scores)} global recent scores in {mode}")
            yield ScoreBatch(
                records=[ScoreRecord.from_api_score(s) for s in scores],
                cursor=page.get("cursor_string"),
                mode=mode,
            )

    def commit(self, batch: ScoreBatch) -> None:
        if batch.mode is not None and batch.cursor is not None:
            self.checkpoints.save_cursor(global_recents_checkpoint(batch.mode), batch.cursor)


class PlayerRecentSource(ScoreSource):
    """One player's recent passes in every mode, as a single batch."""

    name = "player_recents"

    def __init__(self, api_client: OsuApiClient, player_id: int) -> None:
        self.api = api_client
        self.player_id = player_id

    def batches(self) -> Iterator[ScoreBatch]:
        records: list[ScoreRecord] = []
        for mode in RULESETS:
            offset = 0
            while True:
                page = self.api.get_user_scores(
                    self.player_id,
                    "recent",
                    mode=mode,
                    limit=RECENT_PAGE_SIZE,
                    offset=offset,
                    include_fails=False,
                )
                records.extend(ScoreRecord.from_api_score(s) for s in page)
                offset += len(page)
                if len(page) < RECENT_PAGE_SIZE:
                    break
        yield ScoreBatch(records=records)


# =============================================================================
# Imports
# =============================================================================


class _PassedBeatmapsSource(ScoreSource):
    """Shared lookup of a player's passes on a batch of beatmapsets."""

    def __init__(self, session: Session, api_client: OsuApiClient, player_id: int) -> None:
        self.session = session
        self.api = api_client
        self.player_id = player_id

    def _rulesets_for(self, set_ids: list[int]) -> list[int]:
        modes = set(
            self.session.scalars(
                select(Chart.mode).where(Chart.set_id.in_(set_ids)).distinct()
            )
        )
        # Standard beatmaps can be played as converts in every mode
        if "osu" in modes:
            modes.update(RULESETS)
        return [RULESETS.index(m) for m in RULESETS if m in modes]

    def _passed_records(self, set_ids: list[int]) -> list[ScoreRecord]:
        records: list[ScoreRecord] = []
        time_cleared = now_ms()
        for ruleset_id in self._rulesets_for(set_ids):
            passed = self.api.get_user_beatmaps_passed(
                self.player_id,
                set_ids,
                ruleset_id=ruleset_id,
                # Converts would otherwise come back as standard passes
                exclude_converts=ruleset_id == 0,
            )
            # The returned mode is the original beatmap's, so key by ruleset
            mode = RULESETS[ruleset_id]
            for beatmap in passed:
                records.append(
                    ScoreRecord(
                        player_id=self.player_id,
                        chart_id=beatmap["id"],
                        mode=mode,
                        time_cleared=time_cleared,
                        set_id=beatmap.get("beatmapset_id"),
                        chart_status=beatmap.get("status"),
                    )
                )
        return records


class MostPlayedSource(_PassedBeatmapsSource):
    """Incremental import driven by the player's most played list.

    The list is reduced to unique beatmapsets with a leaderboard; every 50
    such sets become one batch. ``offset`` counts list entries consumed, so
    a resumed import continues at the entry after the last saved batch.
    """

    name = "most_played"

    def __init__(
        self,
        session: Session,
        api_client: OsuApiClient,
        chart_cache: ChartCache,
        player_id: int,
        offset: int = 0,
    ) -> None:
        super().__init__(session, api_client, player_id)
        self.chart_cache = chart_cache
        self.start_offset = offset
        self.sets_saved = 0

    def _entries(self) -> Iterator[dict[str, Any]]:
        offset = self.start_offset
        while True:
            page = self.api.get_user_beatmaps(
                self.player_id, "most_played", limit=MOST_PLAYED_PAGE_SIZE, offset=offset
            )
            if not page:
                return
            yield from page
            offset += len(page)

    def _batch(self, set_ids: list[int], offset: int) -> ScoreBatch:
        stored = self.chart_cache.stored_set_ids(set_ids)
        available: list[int] = []
        for set_id in set_ids:
            if set_id not in stored:
                try:
                    self.chart_cache.save_chart_set(set_id, index_for_search=True)
                except OsuApiNotFoundError:
                    violation = ConsistencyViolation(
                        f"Beatmapset {set_id} is on the most played list of player "
                        f"{self.player_id} but no longer exists"
                    )
                    logger.warning(f"{WARN} {violation}")
                    continue
                self.sets_saved += 1
            available.append(set_id)
        return ScoreBatch(
            records=self._passed_records(available),
            offset=offset,
            last_set_id=set_ids[-1],
        )

    def batches(self) -> Iterator[ScoreBatch]:
        seen: set[int] = set()
        pending: list[int] = []
        offset = self.start_offset
        yielded = offset

        for entry in self._entries():
            offset += 1
            beatmapset = entry.get("beatmapset") or {}
            set_id = beatmapset.get("id")
            if set_id is None or set_id in seen:
                continue
            if beatmapset.get("status") not in LEADERBOARD_STATUSES:
                continue
            seen.add(set_id)
            pending.append(set_id)
            if len(pending) == SETS_PER_BATCH:
                yield self._batch(pending, offset)
                pending = []
                yielded = offset

        if pending:
            yield self._batch(pending, offset)
        elif offset > yielded:
            # Trailing entries with nothing to check still count as progress
            yield ScoreBatch(offset=offset)


class ChartSweepSource(_PassedBeatmapsSource):
    """Full import: every stored beatmapset with a leaderboard, in id order.

    Progress is counted in beatmaps; ``last_set_id`` marks the last set
    whose passes were saved.
    """

    name = "chart_sweep"

    def __init__(
        self,
        session: Session,
        api_client: OsuApiClient,
        player_id: int,
        last_set_id: int = 0,
        offset: int = 0,
    ) -> None:
        super().__init__(session, api_client, player_id)
        self.last_set_id = last_set_id
        self.start_offset = offset

    def batches(self) -> Iterator[ScoreBatch]:
        last_set_id = self.last_set_id
        offset = self.start_offset
        while True:
            rows = self.session.execute(
                select(ChartSet.id, func.count(Chart.id).label("chart_count"))
                .join(Chart, Chart.set_id == ChartSet.id)
                .where(ChartSet.id > last_set_id)
                .where(ChartSet.status.in_(LEADERBOARD_STATUSES))
                .group_by(ChartSet.id)
                .order_by(ChartSet.id)
                .limit(SETS_PER_BATCH)
            ).all()
            if not rows:
                return

            set_ids = [row.id for row in rows]
            offset += sum(row.chart_count for row in rows)
            last_set_id = set_ids[-1]
            yield ScoreBatch(
                records=self._passed_records(set_ids),
                offset=offset,
                last_set_id=last_set_id,
            )


def count_sweep_charts(session: Session) -> int:
    """Beatmaps a full import will check."""
    return session.scalar(
        select(func.count())
        .select_from(Chart)
        .join(ChartSet, Chart.set_id == ChartSet.id)
        .where(ChartSet.status.in_(LEADERBOARD_STATUSES))
    ) or 0
