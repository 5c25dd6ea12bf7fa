"""Fixtures for stats tests: a database seeded directly with rows."""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import delete

from osu_complete.data.ledger import PassLedger, PassRecord
from osu_complete.data.models import Chart, ChartSet, Pass, Player

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

# 2020-06-01T00:00:00Z
RANKED_2020 = 1_590_969_600_000


class Seeder:
    """Writes beatmaps, players and passes without going through the API."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def charts(
        self,
        set_id: int,
        count: int,
        first_id: int | None = None,
        mode: str = "osu",
        duration: int = 60,
        status: str = "ranked",
        time_ranked: int = RANKED_2020,
        cs: float = 4.0,
    ) -> list[int]:
        first_id = first_id if first_id is not None else set_id * 1000
        self.session.add(ChartSet(id=set_id, status=status, time_ranked=time_ranked))
        chart_ids = list(range(first_id, first_id + count))
        for chart_id in chart_ids:
            self.session.add(
                Chart(
                    id=chart_id,
                    mode=mode,
                    set_id=set_id,
                    status=status,
                    duration_secs=duration,
                    cs=cs,
                )
            )
        self.session.commit()
        return chart_ids

    def player(
        self,
        player_id: int,
        name: str | None = None,
        last_pass_time: int = 0,
        last_import_time: int | None = None,
    ) -> Player:
        player = Player(
            id=player_id,
            name=name or f"player{player_id}",
            last_pass_time=last_pass_time,
            last_import_time=last_import_time,
        )
        self.session.add(player)
        self.session.commit()
        return player

    def passes(self, player_id: int, chart_ids: list[int], mode: str = "osu") -> None:
        ledger = PassLedger(self.session)
        for chart_id in chart_ids:
            chart = self.session.get(Chart, (chart_id, mode))
            ledger.insert(
                PassRecord(
                    player_id=player_id,
                    chart_id=chart_id,
                    mode=mode,
                    set_id=chart.set_id,
                    time_cleared=1,
                )
            )
        self.session.commit()

    def remove_passes(self, player_id: int, chart_ids: list[int]) -> None:
        self.session.execute(
            delete(Pass).where(Pass.player_id == player_id).where(Pass.chart_id.in_(chart_ids))
        )
        self.session.commit()


@pytest.fixture
def seed(db_session: Session) -> Seeder:
    return Seeder(db_session)
