"""osu!complete ingestion and aggregation pipeline.

Keeps a local cache of ranked/loved beatmaps and player passes in sync with
the osu! API, runs a single-flight import queue, and aggregates completion
statistics per player across every stat category.

Example:
    >>> from osu_complete.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.db_path)
"""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "osu!complete Team"

# Public API exports
from osu_complete.config import Settings, get_settings

__all__ = [
    "Settings",
    "__author__",
    "__version__",
    "get_settings",
]
