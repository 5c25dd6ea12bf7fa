"""Durable cursors for feeds and sweeps.

Each feed (global recents per mode, the map-status sweep, the daily history
snapshot) keeps one row in the ``checkpoints`` table. A cursor is only
written after the work it covers has been committed, so a crash re-reads
the same window instead of skipping it.

Example:
    >>> from osu_complete.data.checkpoint import CheckpointManager
    >>> manager = CheckpointManager(session)
    >>> state = manager.load("global_recents:osu")
    >>> manager.save_cursor("global_recents:osu", "eyJpZCI6MTIzfQ")
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import select

from osu_complete.data.models import Checkpoint as CheckpointRow
from osu_complete.data.schema import now_ms

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    """Progress marker for one feed.

    Attributes:
        pipeline_name: Unique identifier for the feed.
        cursor: Opaque API cursor string.
        last_id: Last processed numeric ID.
        total_processed: Items processed by the current run.
        status: 'running', 'completed' or 'failed'.
        error_message: Error message if status is 'failed'.
        last_updated: Epoch ms of the last save.
    """

    pipeline_name: str
    cursor: str | None = None
    last_id: int = 0
    total_processed: int = 0
    status: str = "running"
    error_message: str | None = None
    last_updated: int = field(default_factory=now_ms)

    @classmethod
    def from_row(cls, row: CheckpointRow) -> Checkpoint:
        return cls(
            pipeline_name=row.pipeline_name,
            cursor=row.cursor,
            last_id=row.last_id,
            total_processed=row.total_processed,
            status=row.status,
            error_message=row.error_message,
            last_updated=row.last_updated,
        )


class CheckpointManager:
    """Loads and saves checkpoints in the ``checkpoints`` table.

    ``save`` commits immediately; callers only save after the data the
    checkpoint describes has been committed.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def load(self, pipeline_name: str) -> Checkpoint | None:
        """Load the checkpoint for a feed.

        Returns:
            Checkpoint if found, None otherwise.
        """
        row = self.session.get(CheckpointRow, pipeline_name)
        if row is None:
            logger.debug(f"No checkpoint found for {pipeline_name}")
            return None
        return Checkpoint.from_row(row)

    def save(self, checkpoint: Checkpoint) -> None:
        """Upsert a checkpoint and commit."""
        checkpoint.last_updated = now_ms()
        self.session.merge(
            CheckpointRow(
                pipeline_name=checkpoint.pipeline_name,
                cursor=checkpoint.cursor,
                last_id=checkpoint.last_id,
                total_processed=checkpoint.total_processed,
                status=checkpoint.status,
                error_message=checkpoint.error_message,
                last_updated=checkpoint.last_updated,
            )
        )
        self.session.commit()
        logger.debug(
            f"Saved checkpoint for {checkpoint.pipeline_name}: "
            f"cursor={checkpoint.cursor!r}, last_id={checkpoint.last_id}"
        )

    def get_cursor(self, pipeline_name: str) -> str | None:
        checkpoint = self.load(pipeline_name)
        return checkpoint.cursor if checkpoint else None

    def save_cursor(self, pipeline_name: str, cursor: str | None) -> None:
        checkpoint = self.load(pipeline_name) or Checkpoint(pipeline_name=pipeline_name)
        checkpoint.cursor = cursor
        checkpoint.status = "running"
        checkpoint.error_message = None
        self.save(checkpoint)

    def clear(self, pipeline_name: str) -> None:
        """Delete a feed's checkpoint so the next run starts fresh."""
        row = self.session.get(CheckpointRow, pipeline_name)
        if row is not None:
            self.session.delete(row)
            self.session.commit()
            logger.info(f"Cleared checkpoint for {pipeline_name}")

    def list_all(self) -> list[Checkpoint]:
        """List all checkpoints, most recently updated first."""
        rows = self.session.scalars(
            select(CheckpointRow).order_by(CheckpointRow.last_updated.desc())
        ).all()
        return [Checkpoint.from_row(row) for row in rows]

    def update_status(
        self,
        pipeline_name: str,
        status: str,
        error_message: str | None = None,
    ) -> None:
        """Update a checkpoint's status, creating it if missing."""
        checkpoint = self.load(pipeline_name) or Checkpoint(pipeline_name=pipeline_name)
        checkpoint.status = status
        checkpoint.error_message = error_message
        self.save(checkpoint)
