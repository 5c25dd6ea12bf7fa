"""Tests for checkpoint management.

Tests the CheckpointManager class for save/load/clear operations.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from osu_complete.data.checkpoint import Checkpoint, CheckpointManager

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


@pytest.fixture
def checkpoint_manager(db_session: "Session") -> CheckpointManager:
    """Create a checkpoint manager on the test database."""
    return CheckpointManager(db_session)


class TestCheckpointDataclass:
    """Tests for Checkpoint dataclass."""

    def test_create_checkpoint_minimal(self) -> None:
        """Should create checkpoint with minimal fields."""
        cp = Checkpoint(pipeline_name="global_recents:osu")

        assert cp.pipeline_name == "global_recents:osu"
        assert cp.cursor is None
        assert cp.last_id == 0
        assert cp.total_processed == 0
        assert cp.status == "running"
        assert cp.error_message is None
        assert cp.last_updated > 0


class TestCheckpointManager:
    """Tests for CheckpointManager."""

    def test_load_missing_returns_none(self, checkpoint_manager: CheckpointManager) -> None:
        assert checkpoint_manager.load("nothing") is None
        assert checkpoint_manager.get_cursor("nothing") is None

    def test_save_and_load(self, checkpoint_manager: CheckpointManager) -> None:
        """Saved checkpoints should round trip through the table."""
        checkpoint_manager.save(
            Checkpoint(
                pipeline_name="status_sweep",
                cursor="abc",
                last_id=1234,
                total_processed=50,
            )
        )

        loaded = checkpoint_manager.load("status_sweep")
        assert loaded is not None
        assert loaded.cursor == "abc"
        assert loaded.last_id == 1234
        assert loaded.total_processed == 50

    def test_save_cursor_overwrites(self, checkpoint_manager: CheckpointManager) -> None:
        checkpoint_manager.save_cursor("global_recents:taiko", "first")
        checkpoint_manager.save_cursor("global_recents:taiko", "second")

        assert checkpoint_manager.get_cursor("global_recents:taiko") == "second"
        assert len(checkpoint_manager.list_all()) == 1

    def test_save_cursor_keeps_other_fields(
        self, checkpoint_manager: CheckpointManager
    ) -> None:
        checkpoint_manager.save(Checkpoint(pipeline_name="sweep", last_id=7))
        checkpoint_manager.save_cursor("sweep", "next")

        loaded = checkpoint_manager.load("sweep")
        assert loaded.last_id == 7
        assert loaded.cursor == "next"

    def test_clear(self, checkpoint_manager: CheckpointManager) -> None:
        checkpoint_manager.save_cursor("sweep", "x")
        checkpoint_manager.clear("sweep")

        assert checkpoint_manager.load("sweep") is None

    def test_clear_missing_is_noop(self, checkpoint_manager: CheckpointManager) -> None:
        checkpoint_manager.clear("missing")

    def test_update_status_creates_checkpoint(
        self, checkpoint_manager: CheckpointManager
    ) -> None:
        checkpoint_manager.update_status("sweep", "failed", "API unavailable")

        loaded = checkpoint_manager.load("sweep")
        assert loaded.status == "failed"
        assert loaded.error_message == "API unavailable"

    def test_save_cursor_resets_failure(self, checkpoint_manager: CheckpointManager) -> None:
        checkpoint_manager.update_status("sweep", "failed", "boom")
        checkpoint_manager.save_cursor("sweep", "c")

        loaded = checkpoint_manager.load("sweep")
        assert loaded.status == "running"
        assert loaded.error_message is None

    def test_checkpoint_survives_new_session(
        self, checkpoint_manager: CheckpointManager
    ) -> None:
        """save commits, so a fresh session sees the cursor."""
        from osu_complete.data.db import get_engine
        from sqlalchemy.orm import Session

        checkpoint_manager.save_cursor("global_recents:mania", "durable")

        with Session(get_engine()) as other:
            assert CheckpointManager(other).get_cursor("global_recents:mania") == "durable"
