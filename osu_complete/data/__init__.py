"""Data layer for osu!complete.

This module provides storage and retrieval of beatmaps and passes,
including database engine/session management, SQLAlchemy ORM models,
the osu! API client and the score sources that feed pass ingestion.

Submodules:
    db: Database engine and session management
    schema: SQLAlchemy base class and time helpers
    models: SQLAlchemy ORM model definitions
    api: osu! API client with rate limiting and retry logic
    checkpoint: Pipeline checkpoint management
    ledger: Pass storage
    chart_cache: Beatmap cache and status sweeps
    sources: Score sources (global feed, player recents, imports)
    pipelines: Pass ingestion (depends on ``osu_complete.stats``; import directly)
    dump: Beatmap import from a data.ppy.sh dump

Example:
    >>> from osu_complete.data import init_db, session_scope
    >>> from osu_complete.data import OsuApiClient, ChartCache
    >>> init_db()
    >>> with session_scope() as session:
    ...     ChartCache(session, OsuApiClient()).fetch_new_chart_sets()
"""
from __future__ import annotations

from osu_complete.data.api import (
    ExternalFetchError,
    OsuApiClient,
    OsuApiError,
    OsuApiNotFoundError,
    OsuApiRateLimitError,
    OsuApiTimeoutError,
)
from osu_complete.data.chart_cache import ChartCache, SavedChartSet, SweepResult
from osu_complete.data.checkpoint import Checkpoint, CheckpointManager
from osu_complete.data.db import (
    get_engine,
    get_session,
    init_db,
    reset_engine,
    session_scope,
    transaction,
    verify_foreign_keys_enabled,
)
from osu_complete.data.ledger import PassLedger, PassRecord
from osu_complete.data.models import (
    CategoryStat,
    CategoryStatYearly,
    Chart,
    ChartSearchEntry,
    ChartSet,
    FullCompletion,
    HistorySnapshotRow,
    ImportTask,
    Pass,
    Player,
)
from osu_complete.data.schema import Base, now_ms, to_ms
from osu_complete.data.sources import (
    ChartSweepSource,
    GlobalRecentSource,
    MostPlayedSource,
    PlayerRecentSource,
    ScoreBatch,
    ScoreRecord,
    ScoreSource,
)

__all__ = [
    # API client and exceptions
    "OsuApiClient",
    "ExternalFetchError",
    "OsuApiError",
    "OsuApiNotFoundError",
    "OsuApiRateLimitError",
    "OsuApiTimeoutError",
    # Checkpoint management
    "Checkpoint",
    "CheckpointManager",
    # Beatmaps and passes
    "ChartCache",
    "SavedChartSet",
    "SweepResult",
    "PassLedger",
    "PassRecord",
    # Sources
    "ScoreSource",
    "ScoreBatch",
    "ScoreRecord",
    "GlobalRecentSource",
    "PlayerRecentSource",
    "MostPlayedSource",
    "ChartSweepSource",
    # Database utilities
    "get_engine",
    "get_session",
    "init_db",
    "reset_engine",
    "session_scope",
    "transaction",
    "verify_foreign_keys_enabled",
    # Base and helpers
    "Base",
    "now_ms",
    "to_ms",
    # Models
    "ChartSet",
    "Chart",
    "ChartSearchEntry",
    "Player",
    "Pass",
    "CategoryStat",
    "CategoryStatYearly",
    "FullCompletion",
    "HistorySnapshotRow",
    "ImportTask",
]
