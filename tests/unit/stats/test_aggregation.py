"""Tests for the stats aggregation engine.

Covers recomputing totals from the ledger, milestone stepping, personal
bests that never regress, full completions and tie-broken ranks.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import select

from osu_complete.data.models import CategoryStat, CategoryStatYearly, FullCompletion, ImportTask
from osu_complete.exceptions import PlayerNotFound
from osu_complete.stats.aggregation import GLOBAL_PLAYER_ID, StatsEngine
from osu_complete.stats.milestones import Milestone
from osu_complete.stats.read import get_completion_stats

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from tests.conftest import RecordingNotifier
    from tests.unit.stats.conftest import Seeder


@pytest.fixture
def engine(db_session: "Session", notifier: "RecordingNotifier") -> StatsEngine:
    return StatsEngine(db_session, notifier)


@pytest.fixture
def hundred_charts(seed: "Seeder", engine: StatsEngine) -> list[int]:
    """100 ranked osu! charts of one minute each, with totals computed."""
    chart_ids = seed.charts(1, 100)
    engine.recompute(GLOBAL_PLAYER_ID)
    return chart_ids


def osu_ranked(milestones: list[Milestone]) -> list[Milestone]:
    return [m for m in milestones if m.category_id == "osu-ranked"]


class TestRecompute:
    """Tests for recomputing totals."""

    def test_player_without_passes(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        """A player with no passes completes nothing."""
        seed.player(2)

        before = get_completion_stats(db_session, 2, "osu-ranked")
        engine.recompute(2)
        after = get_completion_stats(db_session, 2, "osu-ranked")

        for stats in (before, after):
            assert stats.count_completed == 0
            assert stats.percentage_completed == 0
            assert stats.count_total == 100

    def test_global_totals(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine
    ) -> None:
        seed.charts(1, 3, duration=100)
        seed.charts(2, 2, mode="mania", duration=50, cs=7.0)
        seed.charts(3, 1, status="loved", duration=30)

        engine.recompute(GLOBAL_PLAYER_ID)

        totals = {
            row.category_id: (row.count, row.seconds)
            for row in db_session.scalars(
                select(CategoryStat).where(CategoryStat.player_id == 0)
            )
        }
        assert totals["osu-ranked"] == (3, 300)
        assert totals["osu-ranked-loved"] == (4, 330)
        assert totals["mania-ranked-7k"] == (2, 100)
        assert totals["mania-ranked-4k"] == (0, 0)
        assert totals["global-ranked"] == (5, 400)

    def test_yearly_rows(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.passes(2, hundred_charts[:10])

        engine.recompute(2)

        row = db_session.get(CategoryStatYearly, (2, "osu-ranked", 2020))
        assert (row.count, row.seconds) == (10, 600)
        assert db_session.get(CategoryStatYearly, (2, "osu-ranked", 2019)).count == 0

    def test_unknown_player_raises(self, engine: StatsEngine) -> None:
        with pytest.raises(PlayerNotFound):
            engine.recompute(404)

    def test_importing_player_is_skipped(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.passes(2, hundred_charts[:10])
        db_session.add(ImportTask(player_id=2, time_started=1))
        db_session.commit()

        assert engine.recompute(2) == []
        assert get_completion_stats(db_session, 2, "osu-ranked").count_completed == 0

        engine.recompute(2, force=True)
        assert get_completion_stats(db_session, 2, "osu-ranked").count_completed == 10

    def test_recompute_all(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine
    ) -> None:
        chart_ids = seed.charts(1, 4)
        seed.player(2)
        seed.player(3)
        seed.passes(2, chart_ids[:2])
        seed.passes(3, chart_ids)

        assert engine.recompute_all() == 2
        assert get_completion_stats(db_session, 2, "osu-ranked").percentage_completed == 50.0
        assert get_completion_stats(db_session, 3, "osu-ranked").percentage_completed == 100.0


class TestMilestones:
    """Tests for milestone stepping through recomputes."""

    def test_stepped_percentages(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        """25% -> 26% stays in the 25% step; 30% fires exactly one milestone."""
        seed.player(2)
        seed.passes(2, hundred_charts[:25])
        engine.recompute(2)
        assert get_completion_stats(db_session, 2, "osu-ranked").percentage_completed == pytest.approx(25.0)

        seed.passes(2, hundred_charts[25:26])
        milestones = engine.recompute(2)
        assert get_completion_stats(db_session, 2, "osu-ranked").percentage_completed == pytest.approx(26.0)
        assert milestones == []

        seed.passes(2, hundred_charts[26:30])
        milestones = engine.recompute(2)
        assert osu_ranked(milestones) == [Milestone("total_percent", "osu-ranked", 30)]

    def test_large_jump_fires_once_per_kind(
        self, seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.passes(2, hundred_charts[:60])

        milestones = osu_ranked(engine.recompute(2))

        assert [m for m in milestones if m.kind == "total_percent"] == [
            Milestone("total_percent", "osu-ranked", 60)
        ]
        assert [m for m in milestones if m.kind == "yearly_percent"] == [
            Milestone("yearly_percent", "osu-ranked", 50, 2020)
        ]

    def test_forced_recompute_skips_milestones(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine,
        hundred_charts: list[int], notifier: "RecordingNotifier",
    ) -> None:
        seed.player(2)
        seed.passes(2, hundred_charts)

        assert engine.recompute(2, force=True) == []
        assert notifier.on("milestone") == []
        assert db_session.scalars(select(FullCompletion)).all() == []

    def test_milestones_are_announced(
        self, seed: "Seeder", engine: StatsEngine, hundred_charts: list[int],
        notifier: "RecordingNotifier",
    ) -> None:
        seed.player(2, name="peppy")
        seed.passes(2, hundred_charts[:30])

        engine.recompute(2)

        embeds = [e for m in notifier.on("milestone") for e in m["embeds"]]
        titles = [e["title"] for e in embeds]
        assert "Reached 30% completion in osu!standard (ranked only)!" in titles
        assert all(e["author"]["name"] == "peppy" for e in embeds)


class TestFullCompletion:
    def test_first_full_completion_is_recorded_once(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine
    ) -> None:
        chart_ids = seed.charts(1, 2)
        engine.recompute(GLOBAL_PLAYER_ID)
        seed.player(2)
        seed.passes(2, chart_ids)

        engine.recompute(2)
        engine.recompute(2)

        completions = db_session.scalars(
            select(FullCompletion).where(FullCompletion.category_id == "osu-ranked")
        ).all()
        assert len(completions) == 1
        assert completions[0].count == 2
        assert completions[0].seconds == 120


class TestPersonalBests:
    """Tests for best rank and best percentage."""

    def test_best_percentage_never_regresses(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.passes(2, hundred_charts[:25])
        engine.recompute(2)

        seed.remove_passes(2, hundred_charts[:5])
        engine.recompute(2)

        stats = get_completion_stats(db_session, 2, "osu-ranked")
        assert stats.percentage_completed == pytest.approx(20.0)
        assert stats.best_percentage_completed == pytest.approx(25.0)

    def test_best_rank_never_regresses(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.player(3)
        seed.passes(2, hundred_charts[:20])
        engine.recompute(2)
        assert get_completion_stats(db_session, 2, "osu-ranked").best_rank == 1

        seed.passes(3, hundred_charts[:30])
        engine.recompute(3)
        engine.recompute(2)

        stats = get_completion_stats(db_session, 2, "osu-ranked")
        assert stats.rank == 2
        assert stats.best_rank == 1


class TestRanks:
    """Tests for tie-broken ranks."""

    def test_equal_seconds_ordered_by_last_pass_time(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2, last_pass_time=2000)
        seed.player(3, last_pass_time=1000)
        seed.player(4, last_pass_time=1000)
        for player_id in (2, 3, 4):
            seed.passes(player_id, hundred_charts[:10])
            engine.recompute(player_id)

        ranks = {
            player_id: get_completion_stats(db_session, player_id, "osu-ranked").rank
            for player_id in (2, 3, 4)
        }
        assert ranks == {3: 1, 4: 2, 2: 3}

    def test_more_seconds_ranks_higher(
        self, db_session: "Session", seed: "Seeder", engine: StatsEngine, hundred_charts: list[int]
    ) -> None:
        seed.player(2)
        seed.player(3)
        seed.passes(2, hundred_charts[:5])
        seed.passes(3, hundred_charts[:6])
        engine.recompute(2)
        engine.recompute(3)

        assert get_completion_stats(db_session, 3, "osu-ranked").rank == 1
        assert get_completion_stats(db_session, 2, "osu-ranked").rank == 2
