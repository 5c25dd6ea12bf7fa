"""Tests for the pass synchronization pipeline.

Tests SyncPipeline against an in-memory API client: tracked-player
filtering, beatmap caching, idempotent pass writes, status change cascades
and cursor handling for the global feed.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from osu_complete.data.api import OsuApiError, OsuApiNotFoundError
from osu_complete.data.ledger import PassLedger
from osu_complete.data.models import CategoryStat, Pass, Player
from osu_complete.data.pipelines import (
    MAX_GLOBAL_RERUNS,
    PipelineResult,
    PipelineStatus,
    SyncPipeline,
)
from osu_complete.data.sources import (
    GLOBAL_SATURATION_THRESHOLD,
    GlobalRecentSource,
    ScoreBatch,
    ScoreRecord,
    ScoreSource,
    global_recents_checkpoint,
)
from osu_complete.exceptions import PlayerNotFound

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from tests.conftest import FakeApiClient, RecordingNotifier


@pytest.fixture
def pipeline(
    db_session: "Session", fake_api: "FakeApiClient", notifier: "RecordingNotifier"
) -> SyncPipeline:
    return SyncPipeline(db_session, fake_api, notifier)


def track(pipeline: SyncPipeline, fake_api: "FakeApiClient", player_id: int) -> Player:
    fake_api.add_user(player_id)
    return pipeline.update_player_profile(player_id)


def score(
    player_id: int, chart_id: int, mode: str = "osu", time: int = 1000, status: str | None = None
) -> ScoreRecord:
    return ScoreRecord(
        player_id=player_id, chart_id=chart_id, mode=mode, time_cleared=time, chart_status=status
    )


def stat(session: "Session", player_id: int, category_id: str = "osu-ranked") -> CategoryStat:
    session.expire_all()
    return session.get(CategoryStat, (player_id, category_id))


class TestSavePassesFromScores:
    """Tests for the core save routine."""

    def test_untracked_players_are_ignored(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        fake_api.add_set(1, charts=[(11, "osu", 100)])

        result = pipeline.save_passes_from_scores([score(999, 11)])

        assert result.scores_seen == 1
        assert result.scores_relevant == 0
        assert fake_api.calls_to("get_beatmaps") == []

    def test_saves_passes_and_caches_sets(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100), (12, "osu", 300)])

        result = pipeline.save_passes_from_scores(
            [score(2, 11, time=1000), score(2, 12, time=3000), score(999, 12)]
        )

        assert result.scores_relevant == 2
        assert result.passes_saved == 2
        assert result.players_updated == [2]
        assert result.sets_saved == 1
        assert pipeline.chart_cache.get_status(1) == "ranked"
        assert db_session.get(Player, 2).last_pass_time == 3000
        assert stat(db_session, 0).count == 2
        assert stat(db_session, 2).count == 2
        assert stat(db_session, 2).seconds == 400

    def test_replay_is_idempotent(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        """Saving the same scores twice writes nothing the second time."""
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        pipeline.save_passes_from_scores([score(2, 11, time=1000)])

        result = pipeline.save_passes_from_scores([score(2, 11, time=9000)])

        assert result.passes_saved == 0
        assert db_session.get(Pass, (2, 11, "osu")).time_cleared == 1000
        assert PassLedger(db_session).count() == 1

    def test_matching_status_hint_skips_fetch(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100), (12, "osu", 100)])
        pipeline.chart_cache.save_chart_set(1)
        fake_api.calls.clear()

        result = pipeline.save_passes_from_scores([score(2, 12, status="ranked")])

        assert result.passes_saved == 1
        assert fake_api.calls_to("get_beatmaps") == []

    def test_stale_status_hint_refetches(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, status="qualified", charts=[(11, "osu", 100)])
        pipeline.chart_cache.save_chart_set(1)
        fake_api.set_status(1, "ranked")

        result = pipeline.save_passes_from_scores([score(2, 11, status="ranked")])

        assert fake_api.calls_to("get_beatmaps") == [[11]]
        assert result.sets_saved == 1
        assert result.passes_saved == 1
        assert pipeline.chart_cache.get_status(1) == "ranked"

    def test_convert_passes_are_keyed_by_mode(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)], converts=[(11, "taiko", 100)])

        result = pipeline.save_passes_from_scores([score(2, 11), score(2, 11, mode="taiko")])

        assert result.passes_saved == 2
        assert stat(db_session, 2, "taiko-ranked-converts").count == 1
        assert stat(db_session, 2, "taiko-ranked").count == 0

    def test_passes_without_leaderboard_are_skipped(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, status="graveyard", charts=[(11, "osu", 100)])

        result = pipeline.save_passes_from_scores([score(2, 11, time=5000)])

        assert result.passes_saved == 0
        assert result.sets_saved == 0
        assert pipeline.chart_cache.get_status(1) is None
        # The score still happened
        assert db_session.get(Player, 2).last_pass_time == 5000

    def test_unfetchable_beatmap_is_skipped(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])

        result = pipeline.save_passes_from_scores([score(2, 11), score(2, 404)])

        assert result.passes_saved == 1

    def test_deleted_set_is_skipped(
        self,
        pipeline: SyncPipeline,
        fake_api: "FakeApiClient",
        db_session: "Session",
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A set removed between the beatmap lookup and the set fetch."""
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.add_set(2, charts=[(21, "osu", 100)])
        get_beatmapset = fake_api.get_beatmapset

        def without_set_2(beatmapset_id: int) -> dict:
            if beatmapset_id == 2:
                raise OsuApiNotFoundError("Beatmapset 2 not found")
            return get_beatmapset(beatmapset_id)

        monkeypatch.setattr(fake_api, "get_beatmapset", without_set_2)

        result = pipeline.save_passes_from_scores([score(2, 11), score(2, 21)])

        assert result.passes_saved == 1
        assert result.sets_saved == 1
        assert pipeline.chart_cache.get_status(2) is None
        assert db_session.get(Pass, (2, 21, "osu")) is None

    def test_status_change_cascades_to_other_players(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        """A set losing its leaderboard removes everyone's passes on it."""
        track(pipeline, fake_api, 2)
        track(pipeline, fake_api, 3)
        fake_api.add_set(1, charts=[(11, "osu", 100), (12, "osu", 100)])
        pipeline.save_passes_from_scores([score(3, 11)])
        assert stat(db_session, 3).count == 1

        fake_api.set_status(1, "graveyard")
        result = pipeline.save_passes_from_scores([score(2, 12)])

        assert result.passes_saved == 0
        assert result.affected_player_ids == {3}
        assert PassLedger(db_session).count() == 0
        assert stat(db_session, 3).count == 0
        assert stat(db_session, 0).count == 0

    def test_fetch_failure_writes_nothing(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.fail_after["get_beatmaps"] = 0

        with pytest.raises(OsuApiError):
            pipeline.save_passes_from_scores([score(2, 11)])
        assert pipeline.ledger.count() == 0

    def test_stale_profile_refresh_failure_is_tolerated(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        player = track(pipeline, fake_api, 2)
        player.last_profile_update_time = 0
        db_session.commit()
        del fake_api.users[2]
        fake_api.add_set(1, charts=[(11, "osu", 100)])

        result = pipeline.save_passes_from_scores([score(2, 11)])

        assert result.passes_saved == 1


class TestPassNotifications:
    """Tests for the pass feed."""

    def test_new_passes_are_announced(
        self,
        pipeline: SyncPipeline,
        fake_api: "FakeApiClient",
        notifier: "RecordingNotifier",
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)], title="Blue Zenith")

        pipeline.save_passes_from_scores([score(2, 11)])

        [message] = notifier.on("pass")
        assert "player2" in message["content"]
        assert "Blue Zenith" in message["content"]
        assert "gained **10 cxp**" in message["content"]
        assert "/u/2>" in message["content"]

    def test_notify_false_is_silent(
        self,
        pipeline: SyncPipeline,
        fake_api: "FakeApiClient",
        notifier: "RecordingNotifier",
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])

        pipeline.save_passes_from_scores([score(2, 11)], notify=False)

        assert notifier.on("pass") == []

    def test_long_feeds_are_split(
        self,
        pipeline: SyncPipeline,
        fake_api: "FakeApiClient",
        notifier: "RecordingNotifier",
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(100 + i, "osu", 60) for i in range(40)])

        pipeline.save_passes_from_scores([score(2, 100 + i) for i in range(40)])

        messages = notifier.on("pass")
        assert len(messages) > 1
        assert all(len(m["content"]) <= 2000 for m in messages)
        assert sum(m["content"].count("gained") for m in messages) == 40


class _FailingSource(ScoreSource):
    name = "failing"

    def __init__(self, good: list[ScoreRecord]) -> None:
        self.good = good
        self.committed: list[ScoreBatch] = []

    def batches(self):
        yield ScoreBatch(records=self.good)
        raise OsuApiError("feed unavailable")

    def commit(self, batch: ScoreBatch) -> None:
        self.committed.append(batch)


class TestIngest:
    """Tests for draining score sources."""

    def test_failure_keeps_saved_batches(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        source = _FailingSource([score(2, 11)])

        result = pipeline.ingest(source)

        assert result.status is PipelineStatus.FAILED
        assert result.batches == 1
        assert result.passes_saved == 1
        assert "feed unavailable" in result.errors[0]
        assert len(source.committed) == 1

    def test_on_batch_callback(self, pipeline: SyncPipeline, fake_api: "FakeApiClient") -> None:
        seen: list[int] = []
        fake_api.global_pages["osu"] = [[fake_api.score(999, 11)]]

        result = pipeline.ingest(
            GlobalRecentSource(fake_api, pipeline.checkpoints),
            on_batch=lambda batch, saved: seen.append(saved.scores_seen),
        )

        assert result.status is PipelineStatus.COMPLETED
        assert seen == [1, 0, 0, 0]


class TestGlobalRecents:
    """Tests for the global recents feed."""

    def test_cursor_advances_after_save(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.global_pages["osu"] = [[fake_api.score(2, 11)]]

        result = pipeline.sync_global_recents()

        assert result.status is PipelineStatus.COMPLETED
        assert result.passes_saved == 1
        assert pipeline.checkpoints.get_cursor(global_recents_checkpoint("osu")) == "osu-1"

    def test_cursor_holds_when_save_fails(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.global_pages["osu"] = [[fake_api.score(2, 11)]]
        fake_api.fail_after["get_beatmaps"] = 0

        result = pipeline.sync_global_recents()

        assert result.status is PipelineStatus.FAILED
        assert pipeline.checkpoints.get_cursor(global_recents_checkpoint("osu")) is None
        assert pipeline.ledger.count() == 0

    def test_saturated_feed_runs_again(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        fake_api.global_pages["osu"] = [
            [fake_api.score(999, 11) for _ in range(GLOBAL_SATURATION_THRESHOLD + 1)],
            [fake_api.score(999, 11)],
        ]

        result = pipeline.sync_global_recents()

        assert len(fake_api.calls_to("get_scores")) == 8
        assert result.scores_seen == GLOBAL_SATURATION_THRESHOLD + 2

    def test_reruns_are_capped(self, pipeline: SyncPipeline, fake_api: "FakeApiClient") -> None:
        fake_api.global_pages["osu"] = [
            [fake_api.score(999, 11) for _ in range(GLOBAL_SATURATION_THRESHOLD + 1)]
            for _ in range(MAX_GLOBAL_RERUNS + 2)
        ]

        pipeline.sync_global_recents()

        osu_calls = [c for c in fake_api.calls_to("get_scores") if c[0] == "osu"]
        assert len(osu_calls) == MAX_GLOBAL_RERUNS


class TestPlayerRecents:
    def test_untracked_player_raises(self, pipeline: SyncPipeline) -> None:
        with pytest.raises(PlayerNotFound):
            pipeline.sync_player_recents(2)

    def test_saves_recent_passes(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100), (12, "mania", 100, 4.0)])
        fake_api.recent[(2, "osu")] = [fake_api.score(2, 11)]
        fake_api.recent[(2, "mania")] = [fake_api.score(2, 12, ruleset_id=3)]

        result = pipeline.sync_player_recents(2)

        assert isinstance(result, PipelineResult)
        assert result.passes_saved == 2

    def test_all_player_recents(self, pipeline: SyncPipeline, fake_api: "FakeApiClient") -> None:
        track(pipeline, fake_api, 2)
        track(pipeline, fake_api, 3)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.recent[(2, "osu")] = [fake_api.score(2, 11)]
        fake_api.recent[(3, "osu")] = [fake_api.score(3, 11)]

        assert pipeline.save_passes_from_all_player_recents() == 2


class TestBeatmapSync:
    def test_new_sets_refresh_totals(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.add_set(2, charts=[(21, "osu", 50)])

        assert pipeline.sync_new_chart_sets() == 2
        assert stat(db_session, 0).seconds == 150

    def test_nothing_new(self, pipeline: SyncPipeline) -> None:
        assert pipeline.sync_new_chart_sets() == 0

    def test_status_sweep_recomputes_affected(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient", db_session: "Session"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        fake_api.add_set(2, charts=[(21, "osu", 100)])
        pipeline.save_passes_from_scores([score(2, 11), score(2, 21)])
        fake_api.set_status(1, "graveyard")

        result = pipeline.sync_chart_statuses()

        assert result.sets_updated == 1
        assert result.affected_player_ids == {2}
        assert stat(db_session, 2).count == 1
        assert stat(db_session, 0).count == 1


class TestPlayerProfiles:
    """Tests for profile refreshes."""

    def test_creates_player(self, pipeline: SyncPipeline, fake_api: "FakeApiClient") -> None:
        fake_api.add_user(2, name="peppy")

        player = pipeline.update_player_profile(2)

        assert player.name == "peppy"
        assert player.country_code == "AU"
        assert player.last_profile_update_time > 0

    def test_recent_profile_is_not_refetched(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        track(pipeline, fake_api, 2)
        fake_api.users[2]["username"] = "renamed"

        assert pipeline.update_player_profile(2).name == "player2"
        assert len(fake_api.calls_to("get_user")) == 1

    def test_force_refreshes(self, pipeline: SyncPipeline, fake_api: "FakeApiClient") -> None:
        track(pipeline, fake_api, 2)
        fake_api.users[2]["username"] = "renamed"

        assert pipeline.update_player_profile(2, force=True).name == "renamed"

    def test_unknown_user_raises(self, pipeline: SyncPipeline) -> None:
        with pytest.raises(PlayerNotFound):
            pipeline.update_player_profile(404)

    def test_user_without_name_raises(
        self, pipeline: SyncPipeline, fake_api: "FakeApiClient"
    ) -> None:
        fake_api.add_user(2)["username"] = ""

        with pytest.raises(PlayerNotFound):
            pipeline.fetch_player(2)
