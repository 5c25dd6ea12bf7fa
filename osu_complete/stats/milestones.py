"""Milestone detection.

A milestone fires when a value, floored to a fixed step size, is higher
after a recompute than before it. Each kind fires at most once per category
per recompute (yearly kinds at most once per category per year), however
many steps a large backfill jumps over.

Example:
    >>> floor_to_nearest(26.4, 5)
    25
    >>> detect_milestones("osu-ranked", old, new, [], [])
    [Milestone(kind='total_percent', category_id='osu-ranked', value=30, year=None)]
"""
from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from osu_complete.stats.read import CompletionStats, YearlyStats

TOTAL_PERCENT_STEP = 5
YEARLY_PERCENT_STEP = 25
PASS_COUNT_STEP = 1000
XP_STEP = 10000

MilestoneKind = Literal[
    "total_percent", "total_count", "total_xp", "yearly_percent", "yearly_count"
]


@dataclass(frozen=True)
class Milestone:
    """A newly reached stepped threshold.

    Attributes:
        kind: Which value crossed a step.
        category_id: Category the value belongs to.
        value: The stepped value reached (e.g. 30 for 30%).
        year: Ranked year for yearly kinds, otherwise None.
    """

    kind: MilestoneKind
    category_id: str
    value: int
    year: int | None = None

    def describe(self, category_label: str) -> str:
        """Title line, e.g. ``"Reached 30% completion in osu!standard (ranked only)!"``."""
        if self.kind == "total_percent":
            return f"Reached {self.value}% completion in {category_label}!"
        if self.kind == "total_count":
            return f"Reached {self.value:,} passes in {category_label}!"
        if self.kind == "total_xp":
            return f"Reached {self.value:,} cxp in {category_label}!"
        if self.kind == "yearly_percent":
            return f"Reached {self.value}% {self.year} completion in {category_label}!"
        return f"Reached {self.value:,} passes in {category_label} for {self.year}!"


def floor_to_nearest(value: float, step: int) -> int:
    """Floor a value to a multiple of ``step``."""
    return int(math.floor(value / step) * step)


def _crossed(old: float, new: float, step: int) -> int | None:
    old_step = floor_to_nearest(old, step)
    new_step = floor_to_nearest(new, step)
    return new_step if new_step > old_step else None


def detect_milestones(
    category_id: str,
    old: CompletionStats,
    new: CompletionStats,
    old_yearly: Sequence[YearlyStats],
    new_yearly: Sequence[YearlyStats],
) -> list[Milestone]:
    """Compare stats before and after a recompute for one category.

    Yearly percentages are time based, matching the headline percentage.
    """
    milestones: list[Milestone] = []

    checks: list[tuple[MilestoneKind, float, float, int]] = [
        ("total_percent", old.percentage_completed, new.percentage_completed, TOTAL_PERCENT_STEP),
        ("total_count", old.count_completed, new.count_completed, PASS_COUNT_STEP),
        ("total_xp", old.xp, new.xp, XP_STEP),
    ]
    for kind, old_value, new_value, step in checks:
        reached = _crossed(old_value, new_value, step)
        if reached is not None:
            milestones.append(Milestone(kind, category_id, reached))

    old_by_year = {y.year: y for y in old_yearly}
    for year_new in new_yearly:
        year_old = old_by_year.get(year_new.year)
        old_percent = year_old.time_percentage_completed if year_old else 0.0
        old_count = year_old.count_completed if year_old else 0

        reached = _crossed(old_percent, year_new.time_percentage_completed, YEARLY_PERCENT_STEP)
        if reached is not None:
            milestones.append(Milestone("yearly_percent", category_id, reached, year_new.year))

        reached = _crossed(old_count, year_new.count_completed, PASS_COUNT_STEP)
        if reached is not None:
            milestones.append(Milestone("yearly_count", category_id, reached, year_new.year))

    return milestones
