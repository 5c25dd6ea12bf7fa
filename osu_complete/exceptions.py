"""Domain exceptions raised by the ingestion and aggregation pipeline.

External fetch failures live with the API client in
:mod:`osu_complete.data.api`; the errors here describe problems with the
local state itself.
"""
from __future__ import annotations


class OsuCompleteError(Exception):
    """Base exception for pipeline errors."""

    pass


class InvalidCategory(OsuCompleteError, ValueError):
    """A category id is not one of the generated stat categories."""

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Invalid category ID: {category_id!r}")
        self.category_id = category_id


class PlayerNotFound(OsuCompleteError):
    """A player is unknown locally or on the osu! API."""

    def __init__(self, player_id: int) -> None:
        super().__init__(f"Player with ID {player_id} not found")
        self.player_id = player_id


class ConsistencyViolation(OsuCompleteError):
    """Local rows reference something that no longer resolves.

    Never fatal: callers log it as a warning and skip the offending row.
    """

    pass
