"""SQLAlchemy ORM models for beatmaps, players, passes and stats.

Models are organized into categories:
- Beatmap cache: ChartSet, Chart, ChartSearchEntry
- Players and passes: Player, Pass
- Aggregates: CategoryStat, CategoryStatYearly, FullCompletion
- History: HistorySnapshotRow
- Worker state: ImportTask, Checkpoint

Example:
    >>> from osu_complete.data.models import ChartSet
    >>> from osu_complete.data.db import session_scope
    >>> with session_scope() as session:
    ...     mapset = session.get(ChartSet, 1)
    ...     print(mapset.title)
"""
from __future__ import annotations

from sqlalchemy import BigInteger, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from osu_complete.data.schema import Base, now_ms

# =============================================================================
# Beatmap Cache
# =============================================================================


class ChartSet(Base):
    """A beatmapset as last seen on the osu! API.

    Attributes:
        id: osu! beatmapset ID.
        status: Ranked status (ranked, approved, loved, graveyard, ...).
        title: Song title.
        artist: Song artist.
        mapper: Creator username.
        time_ranked: Ranked date (submitted date if never ranked), epoch ms.
        charts: Beatmaps and converts in this set.
    """

    __tablename__ = "beatmapsets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    artist: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    mapper: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    time_ranked: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    charts: Mapped[list[Chart]] = relationship(
        back_populates="chart_set", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<ChartSet(id={self.id}, status={self.status!r})>"


class Chart(Base):
    """A single difficulty in one mode.

    Converts share the ID of their osu!standard original, so the key is
    ``(id, mode)``.

    Attributes:
        id: osu! beatmap ID.
        mode: Mode key (osu, taiko, fruits, mania).
        set_id: Parent beatmapset.
        status: Ranked status (mirrors the set).
        name: Difficulty name.
        stars: Star rating.
        is_convert: 1 for converted beatmaps, 0 otherwise.
        duration_secs: Drain length in seconds.
        cs: Circle size, key count for mania.
        ar: Approach rate.
        od: Overall difficulty.
        hp: HP drain.
        bpm: Beats per minute.
    """

    __tablename__ = "beatmaps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    mode: Mapped[str] = mapped_column(String(8), primary_key=True)
    set_id: Mapped[int] = mapped_column(
        ForeignKey("beatmapsets.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    stars: Mapped[float] = mapped_column(nullable=False, default=0.0)
    is_convert: Mapped[int] = mapped_column(nullable=False, default=0)
    duration_secs: Mapped[int] = mapped_column(nullable=False, default=0)
    cs: Mapped[float | None] = mapped_column(nullable=True)
    ar: Mapped[float | None] = mapped_column(nullable=True)
    od: Mapped[float | None] = mapped_column(nullable=True)
    hp: Mapped[float | None] = mapped_column(nullable=True)
    bpm: Mapped[float | None] = mapped_column(nullable=True)

    chart_set: Mapped[ChartSet] = relationship(back_populates="charts")

    __table_args__ = (Index("idx_beatmaps_set_id", "set_id"),)

    def __repr__(self) -> str:
        return f"<Chart(id={self.id}, mode={self.mode!r}, status={self.status!r})>"


class ChartSearchEntry(Base):
    """Append-only text search entry for a beatmap."""

    __tablename__ = "beatmaps_search"

    map_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    mode: Mapped[str] = mapped_column(String(8), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    artist: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")


# =============================================================================
# Players and Passes
# =============================================================================


class Player(Base):
    """A tracked osu! user.

    Attributes:
        id: osu! user ID.
        name: Current username.
        avatar_url: Avatar image URL.
        country_code: Two letter country code.
        time_created: When the player was first tracked, epoch ms.
        last_pass_time: Time of the latest recorded pass; ranks tie-break on it.
        last_import_time: When the last import completed (None if never).
        has_full_import: Whether the last import was a full sweep.
        last_profile_update_time: When the profile was last refreshed.
    """

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    last_pass_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_import_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    has_full_import: Mapped[bool] = mapped_column(nullable=False, default=False)
    last_profile_update_time: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )

    def __repr__(self) -> str:
        return f"<Player(id={self.id}, name={self.name!r})>"


class Pass(Base):
    """A player's first recorded pass of a beatmap in a mode.

    Attributes:
        player_id: Player who passed the beatmap.
        chart_id: Beatmap ID.
        mode: Mode the pass was set in (converts use their own mode).
        set_id: Beatmapset ID, used for bulk deletion on unrank.
        time_cleared: When the pass was first seen, epoch ms.
    """

    __tablename__ = "passes"

    player_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    chart_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    mode: Mapped[str] = mapped_column(String(8), primary_key=True)
    set_id: Mapped[int] = mapped_column(nullable=False)
    time_cleared: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_passes_set_id", "set_id"),
        Index("idx_passes_time_cleared", "time_cleared"),
    )

    def __repr__(self) -> str:
        return (
            f"<Pass(player_id={self.player_id}, chart_id={self.chart_id}, "
            f"mode={self.mode!r})>"
        )


# =============================================================================
# Aggregates
# =============================================================================


class CategoryStat(Base):
    """Completion totals and personal bests for one player in one category.

    ``player_id == 0`` holds the totals over every stored beatmap.
    """

    __tablename__ = "category_stats"

    player_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    count: Mapped[int] = mapped_column(nullable=False, default=0)
    seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    best_rank: Mapped[int] = mapped_column(nullable=False, default=0)
    best_rank_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    best_percent: Mapped[float] = mapped_column(nullable=False, default=0.0)
    best_percent_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        Index("idx_category_stats_category_seconds", "category_id", "seconds"),
    )


class CategoryStatYearly(Base):
    """Completion totals for one player in one category for one ranked year."""

    __tablename__ = "category_stats_yearly"

    player_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    year: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    count: Mapped[int] = mapped_column(nullable=False, default=0)
    seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class FullCompletion(Base):
    """Record of a player first reaching 100% in a category."""

    __tablename__ = "full_completions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(nullable=False)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    count: Mapped[int] = mapped_column(nullable=False)
    seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)


# =============================================================================
# History
# =============================================================================


class HistorySnapshotRow(Base):
    """Daily snapshot of a player's standing in a category. Never overwritten."""

    __tablename__ = "category_stats_history"

    player_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date: Mapped[str] = mapped_column(String(10), primary_key=True)
    count: Mapped[int] = mapped_column(nullable=False)
    seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    percent: Mapped[float] = mapped_column(nullable=False)
    rank: Mapped[int] = mapped_column(nullable=False)
    saved_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)


# =============================================================================
# Worker State
# =============================================================================


class ImportTask(Base):
    """A queued or running import of one player's passes.

    Attributes:
        player_id: Player being imported.
        time_queued: Queue ordering key, epoch ms (full imports sit 7 days out).
        time_started: 0 while waiting, start time once importing.
        is_full: Whether this sweeps every stored beatmap.
        percent_complete: Progress through ``source_total_count``.
        passes_imported: New passes saved so far.
        source_total_count: Progress denominator (most played count or beatmap count).
        checkpoint_offset: Source units consumed so far.
        last_set_id: Last beatmapset fully checked by a full import.
    """

    __tablename__ = "import_queue"

    player_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    time_queued: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    time_started: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_full: Mapped[bool] = mapped_column(nullable=False, default=False)
    percent_complete: Mapped[float] = mapped_column(nullable=False, default=0.0)
    passes_imported: Mapped[int] = mapped_column(nullable=False, default=0)
    source_total_count: Mapped[int] = mapped_column(nullable=False, default=0)
    checkpoint_offset: Mapped[int] = mapped_column(nullable=False, default=0)
    last_set_id: Mapped[int] = mapped_column(nullable=False, default=0)

    @property
    def is_started(self) -> bool:
        return self.time_started > 0

    def __repr__(self) -> str:
        return (
            f"<ImportTask(player_id={self.player_id}, is_full={self.is_full}, "
            f"percent_complete={self.percent_complete})>"
        )


class Checkpoint(Base):
    """Durable progress marker for a feed or sweep.

    Attributes:
        pipeline_name: Unique identifier, e.g. ``"global_recents:osu"``.
        cursor: Opaque API cursor string.
        last_id: Last processed numeric ID.
        total_processed: Items processed by the current run.
        status: 'running', 'completed' or 'failed'.
        error_message: Error message if status is 'failed'.
        last_updated: Epoch ms of the last save.
    """

    __tablename__ = "checkpoints"

    pipeline_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    cursor: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    last_id: Mapped[int] = mapped_column(nullable=False, default=0)
    total_processed: Mapped[int] = mapped_column(nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    error_message: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    last_updated: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms, onupdate=now_ms
    )
