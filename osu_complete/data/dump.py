"""Beatmap import from a data.ppy.sh database dump.

The search feed can't return DMCA'd sets, so a fresh database is seeded
from the ``osu_beatmapsets.sql`` table dump instead. Only the beatmapset
ids are read from the dump; every unseen set is then fetched from the API
with its converts, exactly like a set discovered by the search feed.

Example:
    >>> from osu_complete.data.dump import import_beatmaps
    >>> result = import_beatmaps(session, api, Path("dumps/2024_10_01"))
    >>> result.sets_saved
    36219
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select

from osu_complete.data.api import ExternalFetchError
from osu_complete.data.chart_cache import ChartCache
from osu_complete.data.models import Chart, ChartSet, Pass
from osu_complete.logging import FAIL, SUCCESS

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from osu_complete.data.api import OsuApiClient

logger = logging.getLogger(__name__)

BEATMAPSETS_DUMP_FILE = "osu_beatmapsets.sql"


@dataclass
class DumpImportResult:
    """Counts from one dump import.

    Attributes:
        sets_seen: Set ids read from the dump.
        sets_saved: Sets fetched and stored.
        charts_saved: Beatmap rows written, converts included.
        failed_set_ids: Sets that couldn't be fetched.
    """

    sets_seen: int = 0
    sets_saved: int = 0
    charts_saved: int = 0
    failed_set_ids: list[int] = field(default_factory=list)


def _first_fields(values: str) -> Iterator[int]:
    """Yield the leading integer of every ``(...)`` tuple in a VALUES list."""
    depth = 0
    in_string = False
    escaped = False
    start: int | None = None
    for i, char in enumerate(values):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == "'":
                in_string = False
            continue
        if char == "'":
            in_string = True
        elif char == "(":
            depth += 1
            if depth == 1:
                start = i + 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 1 and start is not None:
            first = values[start:i].strip()
            start = None
            if first.isdigit():
                yield int(first)


def iter_dump_set_ids(path: Path) -> Iterator[int]:
    """Beatmapset ids from a mysqldump of ``osu_beatmapsets``, in file order."""
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.startswith("INSERT INTO"):
                continue
            _, _, values = line.partition(" VALUES ")
            yield from _first_fields(values)


def find_incomplete_set_ids(session: Session) -> list[int]:
    """Sets with beatmaps missing difficulty data, or passes but no set row."""
    missing_data = session.scalars(
        select(Chart.set_id).where(Chart.cs.is_(None)).distinct()
    ).all()
    unstored = session.scalars(
        select(Pass.set_id).where(Pass.set_id.not_in(select(ChartSet.id))).distinct()
    ).all()
    return sorted({*missing_data, *unstored})


def import_beatmaps(
    session: Session,
    api_client: OsuApiClient,
    dump_path: Path,
) -> DumpImportResult:
    """Store every set in a dump that isn't stored yet, then repair gaps.

    Args:
        session: Database session.
        api_client: osu! API client used to fetch full sets.
        dump_path: Dump folder, or the ``osu_beatmapsets.sql`` file itself.

    Returns:
        DumpImportResult with counts.

    Raises:
        FileNotFoundError: If the dump file doesn't exist.
    """
    dump_file = dump_path / BEATMAPSETS_DUMP_FILE if dump_path.is_dir() else dump_path
    if not dump_file.exists():
        raise FileNotFoundError(f"Beatmapsets dump not found: {dump_file}")

    cache = ChartCache(session, api_client)
    result = DumpImportResult()
    stored = set(session.scalars(select(ChartSet.id)))

    def save(set_id: int) -> None:
        try:
            saved = cache.save_chart_set(set_id, index_for_search=True)
        except ExternalFetchError as e:
            logger.error(f"{FAIL} Couldn't fetch beatmapset {set_id}: {e}")
            result.failed_set_ids.append(set_id)
            return
        stored.add(set_id)
        result.sets_saved += 1
        result.charts_saved += saved.chart_count

    logger.info("Importing unsaved beatmapsets...")
    for set_id in iter_dump_set_ids(dump_file):
        result.sets_seen += 1
        if set_id not in stored:
            save(set_id)

    extra = find_incomplete_set_ids(session)
    logger.info(f"Found {len(extra)} additional beatmapsets needing import")
    for set_id in extra:
        save(set_id)

    logger.info(
        f"{SUCCESS} Imported {result.sets_saved} beatmapsets and {result.charts_saved} beatmaps"
    )
    return result
