"""Pass synchronization pipeline.

Every score source converges on :meth:`SyncPipeline.save_passes_from_scores`,
which keeps only tracked players, makes sure every referenced beatmap is
cached with its current status, writes passes per player in one
transaction each and then recomputes stats for the players that gained
passes. Recomputes and notifications run after the commit; their failures
are logged and never undo saved passes.

Example:
    >>> from osu_complete.data.pipelines import SyncPipeline
    >>> from osu_complete.data import OsuApiClient, session_scope
    >>> with session_scope() as session:
    ...     pipeline = SyncPipeline(session=session, api_client=OsuApiClient())
    ...     result = pipeline.sync_global_recents()
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from osu_complete.categories import LEADERBOARD_STATUSES
from osu_complete.config import get_settings
from osu_complete.data.api import BEATMAPS_PER_REQUEST, ExternalFetchError, OsuApiNotFoundError
from osu_complete.data.chart_cache import ChartCache, SweepResult
from osu_complete.data.checkpoint import CheckpointManager
from osu_complete.data.db import transaction
from osu_complete.data.ledger import PassLedger, PassRecord
from osu_complete.data.models import Chart, Player
from osu_complete.data.schema import now_ms
from osu_complete.data.sources import GlobalRecentSource, PlayerRecentSource
from osu_complete.exceptions import ConsistencyViolation, PlayerNotFound
from osu_complete.logging import FAIL, SUCCESS, WARN
from osu_complete.notify import NullNotifier
from osu_complete.stats.aggregation import GLOBAL_PLAYER_ID, StatsEngine
from osu_complete.stats.read import secs_to_xp

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient
    from osu_complete.data.sources import ScoreBatch, ScoreRecord, ScoreSource
    from osu_complete.notify import Notifier

logger = logging.getLogger(__name__)

# Profiles are refreshed from the API at most this often
PROFILE_REFRESH_MS = 15 * 60 * 1000

# Global recents re-runs allowed back to back while the feed is saturated
MAX_GLOBAL_RERUNS = 10

# Discord message content limit
MAX_MESSAGE_LENGTH = 2000

MODE_SHORT = {"osu": "osu!", "taiko": "taiko", "fruits": "catch", "mania": "mania"}


class PipelineStatus(Enum):
    """Status of a pipeline execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SaveResult:
    """Outcome of one ``save_passes_from_scores`` call.

    Attributes:
        scores_seen: Records received.
        scores_relevant: Records from tracked players.
        passes_saved: New pass rows written.
        players_updated: Players who gained passes.
        sets_saved: Beatmapsets written because they were new or changed.
        affected_player_ids: Players who lost passes to a status change.
    """

    scores_seen: int = 0
    scores_relevant: int = 0
    passes_saved: int = 0
    players_updated: list[int] = field(default_factory=list)
    sets_saved: int = 0
    affected_player_ids: set[int] = field(default_factory=set)


@dataclass
class PipelineResult:
    """Results from ingesting one source.

    Attributes:
        status: Final pipeline status.
        batches: Batches saved and committed.
        scores_seen: Records read from the source.
        passes_saved: New pass rows written.
        errors: Error messages.
        duration_seconds: Total execution time in seconds.
    """

    status: PipelineStatus
    batches: int = 0
    scores_seen: int = 0
    passes_saved: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class _PassLine:
    player_id: int
    player_name: str
    set_id: int
    chart_id: int
    mode: str
    title: str
    xp: int


class SyncPipeline:
    """Saves passes from any score source and keeps derived data current.

    Provides methods for:
    - Ingesting a :class:`ScoreSource` batch by batch
    - Global and per-player recent score feeds
    - New beatmapset discovery and status sweeps
    - Player profile refreshes
    """

    def __init__(
        self,
        session: Session,
        api_client: OsuApiClient,
        notifier: Notifier | None = None,
        chart_cache: ChartCache | None = None,
        stats_engine: StatsEngine | None = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            session: Database session.
            api_client: osu! API client.
            notifier: Notification sink (defaults to a no-op sink).
            chart_cache: Beatmap cache (built from the session if omitted).
            stats_engine: Stats engine (built from the session if omitted).
        """
        self.session = session
        self.api = api_client
        self.notifier = notifier or NullNotifier()
        self.chart_cache = chart_cache or ChartCache(session, api_client, self.notifier)
        self.stats = stats_engine or StatsEngine(session, self.notifier)
        self.ledger = PassLedger(session)
        self.checkpoints = CheckpointManager(session)
        self.logger = logging.getLogger(self.__class__.__name__)

    # =========================================================================
    # Core routine
    # =========================================================================

    def save_passes_from_scores(
        self,
        records: Iterable[ScoreRecord],
        notify: bool = True,
    ) -> SaveResult:
        """Save passes from normalized score records.

        1. Drop records from players that aren't tracked
        2. Cache every referenced beatmap whose set is missing or changed status
        3. Per player, in one transaction: insert-or-ignore passes on beatmaps
           with a leaderboard and advance ``last_pass_time``
        4. After committing, recompute stats for players with new passes

        Args:
            records: Score records from any source.
            notify: Whether to post new passes to the pass feed.

        Returns:
            SaveResult with counts.

        Raises:
            ExternalFetchError: If beatmap data can't be fetched. No passes
                have been written for this call in that case.
        """
        records = list(records)
        result = SaveResult(scores_seen=len(records))

        player_ids = {r.player_id for r in records}
        tracked = set(
            self.session.scalars(select(Player.id).where(Player.id.in_(player_ids)))
        ) if player_ids else set()
        by_player: dict[int, list[ScoreRecord]] = defaultdict(list)
        for record in records:
            if record.player_id in tracked:
                by_player[record.player_id].append(record)
        result.scores_relevant = sum(len(v) for v in by_player.values())
        if not by_player:
            return result

        resolved = self._resolve_charts(
            [r for player_records in by_player.values() for r in player_records], result
        )

        lines: list[_PassLine] = []
        for player_id, player_records in by_player.items():
            player = self._refresh_profile_quietly(player_id)
            new_passes = self._save_player_passes(player, player_records, resolved)
            if not new_passes:
                continue
            result.passes_saved += len(new_passes)
            result.players_updated.append(player_id)
            self.logger.info(f"Saved {len(new_passes)} new passes for {player.name}")
            lines.extend(
                _PassLine(
                    player_id=player.id,
                    player_name=player.name,
                    set_id=p.set_id,
                    chart_id=p.chart_id,
                    mode=p.mode,
                    title=resolved[p.chart_id][2],
                    xp=secs_to_xp(resolved[p.chart_id][3]),
                )
                for p in new_passes
            )

        if result.sets_saved:
            self._recompute_quietly(GLOBAL_PLAYER_ID, force=True)
        for player_id in sorted(set(result.players_updated) | result.affected_player_ids):
            self._recompute_quietly(player_id)

        if notify and lines:
            self._notify_passes(lines)
        if result.passes_saved:
            self.logger.info(
                f"{SUCCESS} Processed {result.scores_relevant} relevant "
                f"(of {result.scores_seen} total) scores, saved {result.passes_saved} new passes"
            )
        return result

    def _resolve_charts(
        self,
        records: list[ScoreRecord],
        result: SaveResult,
    ) -> dict[int, tuple[int, str, str, int]]:
        """Map beatmap id to ``(set_id, status, title, duration_secs)``.

        Beatmaps are fetched when not cached or when the record's status
        hint disagrees with the cache. Sets that are new or changed status
        are saved, which deletes passes on sets that lost their leaderboard.
        """
        hints: dict[int, str | None] = {}
        for record in records:
            hints.setdefault(record.chart_id, record.chart_status)

        # Non-convert rows last so they win
        cached = {
            chart.id: chart
            for chart in self.session.scalars(
                select(Chart)
                .where(Chart.id.in_(list(hints)))
                .order_by(Chart.is_convert.desc())
            )
        }

        resolved: dict[int, tuple[int, str, str, int]] = {}
        to_fetch: list[int] = []
        for chart_id, hint in hints.items():
            chart = cached.get(chart_id)
            if chart is None or hint is None or hint != chart.status:
                to_fetch.append(chart_id)
            else:
                resolved[chart_id] = (
                    chart.set_id,
                    chart.status,
                    f"{chart.chart_set.artist} - {chart.chart_set.title} [{chart.name}]",
                    chart.duration_secs,
                )
        if not to_fetch:
            return resolved

        self.logger.info(f"Fetching data for {len(to_fetch)} beatmaps...")
        set_statuses: dict[int, str] = {}
        for start in range(0, len(to_fetch), BEATMAPS_PER_REQUEST):
            for beatmap in self.api.get_beatmaps(to_fetch[start:start + BEATMAPS_PER_REQUEST]):
                beatmapset = beatmap.get("beatmapset") or {}
                set_id = beatmap.get("beatmapset_id") or beatmapset["id"]
                resolved[beatmap["id"]] = (
                    set_id,
                    beatmap["status"],
                    f"{beatmapset.get('artist', '')} - {beatmapset.get('title', '')} "
                    f"[{beatmap.get('version', '')}]",
                    beatmap.get("total_length") or 0,
                )
                set_statuses[set_id] = beatmapset.get("status", beatmap["status"])

        for set_id, status in set_statuses.items():
            if not self.chart_cache.detect_status_change(set_id, status):
                continue
            is_new = self.chart_cache.get_status(set_id) is None
            if is_new and status not in LEADERBOARD_STATUSES:
                continue
            try:
                saved = self.chart_cache.save_chart_set(set_id, index_for_search=is_new)
            except OsuApiNotFoundError:
                violation = ConsistencyViolation(
                    f"Beatmapset {set_id} was returned for a beatmap but no longer exists"
                )
                self.logger.warning(f"{WARN} {violation}")
                if is_new:
                    resolved = {
                        chart_id: chart for chart_id, chart in resolved.items()
                        if chart[0] != set_id
                    }
                continue
            result.sets_saved += 1
            result.affected_player_ids.update(saved.affected_player_ids)
        return resolved

    def _save_player_passes(
        self,
        player: Player,
        records: list[ScoreRecord],
        resolved: dict[int, tuple[int, str, str, int]],
    ) -> list[PassRecord]:
        new_passes: list[PassRecord] = []
        latest = 0
        with transaction(self.session):
            for record in records:
                chart = resolved.get(record.chart_id)
                if chart is None:
                    violation = ConsistencyViolation(
                        f"Beatmap {record.chart_id} couldn't be fetched from osu! API"
                    )
                    self.logger.warning(f"{WARN} {violation}")
                    continue
                latest = max(latest, record.time_cleared)
                set_id, status = chart[0], chart[1]
                if status not in LEADERBOARD_STATUSES:
                    continue
                pass_record = PassRecord(
                    player_id=player.id,
                    chart_id=record.chart_id,
                    mode=record.mode,
                    set_id=set_id,
                    time_cleared=record.time_cleared,
                )
                if self.ledger.insert(pass_record):
                    new_passes.append(pass_record)
            if latest > player.last_pass_time:
                player.last_pass_time = latest
        return new_passes

    def _recompute_quietly(self, player_id: int, force: bool = False) -> None:
        try:
            self.stats.recompute(player_id, force=force)
        except Exception:
            self.session.rollback()
            self.logger.exception(f"{FAIL} Stats recompute failed for player {player_id}")

    # =========================================================================
    # Sources
    # =========================================================================

    def ingest(
        self,
        source: ScoreSource,
        notify: bool = True,
        on_batch: Callable[[ScoreBatch, SaveResult], None] | None = None,
    ) -> PipelineResult:
        """Save every batch a source yields, committing its position after each.

        External fetch failures stop the run with a FAILED status; batches
        already saved stay saved and the source resumes after them.

        Args:
            source: Score source to drain.
            notify: Whether to post new passes to the pass feed.
            on_batch: Called after each batch is saved and committed.

        Returns:
            PipelineResult with statistics.
        """
        start_time = time.time()
        result = PipelineResult(status=PipelineStatus.RUNNING)
        try:
            for batch in source.batches():
                saved = self.save_passes_from_scores(batch.records, notify=notify)
                source.commit(batch)
                result.batches += 1
                result.scores_seen += saved.scores_seen
                result.passes_saved += saved.passes_saved
                if on_batch is not None:
                    on_batch(batch, saved)
            result.status = PipelineStatus.COMPLETED
        except ExternalFetchError as e:
            self.session.rollback()
            self.logger.error(f"{FAIL} {source.name} failed: {e}")
            result.status = PipelineStatus.FAILED
            result.errors.append(str(e))

        result.duration_seconds = time.time() - start_time
        return result

    def sync_global_recents(self) -> PipelineResult:
        """Save passes from the global recent scores feed of every mode.

        Runs again straight away while the feed keeps returning near-full
        pages, up to ``MAX_GLOBAL_RERUNS`` times.
        """
        self.logger.info("Fetching global recents in all modes...")
        total = PipelineResult(status=PipelineStatus.RUNNING)
        for _ in range(MAX_GLOBAL_RERUNS):
            source = GlobalRecentSource(self.api, self.checkpoints)
            result = self.ingest(source)
            total.status = result.status
            total.batches += result.batches
            total.scores_seen += result.scores_seen
            total.passes_saved += result.passes_saved
            total.errors.extend(result.errors)
            total.duration_seconds += result.duration_seconds
            if result.status is PipelineStatus.FAILED or not source.saturated:
                break
            self.logger.info(
                "Fetched a large number of scores, checking global recents again..."
            )
        return total

    def sync_player_recents(self, player_id: int) -> PipelineResult:
        """Save passes from one player's recent scores in every mode.

        Raises:
            PlayerNotFound: If the player isn't tracked.
        """
        player = self.session.get(Player, player_id)
        if player is None:
            raise PlayerNotFound(player_id)
        self.logger.info(f"Fetching recent scores for {player.name}...")
        return self.ingest(PlayerRecentSource(self.api, player_id))

    def save_passes_from_all_player_recents(self) -> int:
        """Run :meth:`sync_player_recents` for every tracked player.

        Returns:
            Total new passes saved.
        """
        saved = 0
        for player_id in list(self.session.scalars(select(Player.id).order_by(Player.id))):
            saved += self.sync_player_recents(player_id).passes_saved
        return saved

    # =========================================================================
    # Beatmaps
    # =========================================================================

    def sync_new_chart_sets(self) -> int:
        """Save newly ranked or loved sets and refresh category totals.

        Returns:
            Number of sets saved.
        """
        saved = self.chart_cache.fetch_new_chart_sets()
        if saved:
            self._recompute_quietly(GLOBAL_PLAYER_ID, force=True)
        return len(saved)

    def sync_chart_statuses(self) -> SweepResult:
        """Sweep every stored set for status changes and recompute what moved."""
        result = self.chart_cache.sweep_statuses()
        if result.sets_updated:
            self._recompute_quietly(GLOBAL_PLAYER_ID, force=True)
        for player_id in sorted(result.affected_player_ids):
            self._recompute_quietly(player_id)
        return result

    # =========================================================================
    # Players
    # =========================================================================

    def update_player_profile(self, player_id: int, force: bool = False) -> Player:
        """Create or refresh a player's row from the API.

        Profiles fetched less than 15 minutes ago are returned as stored
        unless ``force`` is set.

        Raises:
            PlayerNotFound: If the API has no such user.
            ExternalFetchError: If the API request fails.
        """
        player = self.session.get(Player, player_id)
        if (
            player is not None
            and not force
            and now_ms() - player.last_profile_update_time < PROFILE_REFRESH_MS
        ):
            return player
        return self.store_player_profile(player_id, self.fetch_player(player_id))

    def fetch_player(self, player_id: int) -> dict[str, Any]:
        """Fetch a user from the API.

        Raises:
            PlayerNotFound: If the API has no such user.
        """
        try:
            data = self.api.get_user(player_id)
        except OsuApiNotFoundError:
            raise PlayerNotFound(player_id) from None
        if not data.get("username"):
            raise PlayerNotFound(player_id)
        return data

    def store_player_profile(self, player_id: int, data: dict[str, Any]) -> Player:
        """Create or update a player's row from fetched user data."""
        player = self.session.get(Player, player_id)
        country_code = data.get("country_code") or (data.get("country") or {}).get("code")
        with transaction(self.session):
            if player is None:
                player = Player(id=player_id, name=data["username"], time_created=now_ms())
                self.session.add(player)
                self.logger.info(f"Stored user data for {data['username']}")
            else:
                self.logger.info(f"Updated stored user data for {data['username']}")
            player.name = data["username"]
            player.avatar_url = data.get("avatar_url")
            player.country_code = country_code
            player.last_profile_update_time = now_ms()
        return player

    def _refresh_profile_quietly(self, player_id: int) -> Player:
        player = self.session.get(Player, player_id)
        try:
            return self.update_player_profile(player_id)
        except (ExternalFetchError, PlayerNotFound) as e:
            self.logger.warning(f"{WARN} Couldn't refresh profile of player {player_id}: {e}")
            return player

    # =========================================================================
    # Notifications
    # =========================================================================

    def _notify_passes(self, lines: list[_PassLine]) -> None:
        base_url = get_settings().base_url
        messages: list[str] = []
        current = ""
        for line in lines:
            text = (
                f"-# * **[{line.player_name}](<{base_url}/u/{line.player_id}>)** "
                f"gained **{line.xp:,} cxp** from [{line.title}]"
                f"(<https://osu.ppy.sh/beatmapsets/{line.set_id}#{line.mode}/{line.chart_id}>) "
                f"**({MODE_SHORT.get(line.mode, line.mode)})**"
            )
            if current and len(current) + len(text) + 1 > MAX_MESSAGE_LENGTH:
                messages.append(current)
                current = ""
            current = f"{current}\n{text}" if current else text
        if current:
            messages.append(current)
        for content in messages:
            self.notifier.send("pass", {"content": content})
