"""Shared pytest fixtures for osu!complete tests.

This module contains fixtures used across multiple test modules:
- Configuration fixtures (test settings on a temporary SQLite file)
- Database session fixtures
- A fake osu! API client backed by in-memory data
- Builders for beatmapsets, players and scores

Example:
    def test_something(db_session, fake_api):
        fake_api.add_set(1, charts=[(11, "osu", 100)])
        ...
"""
from __future__ import annotations

import copy
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from osu_complete.config import Settings, reset_settings
from osu_complete.data.api import RULESETS, OsuApiError, OsuApiNotFoundError

ENV_KEYS = ["OSU_DB_PATH", "LOG_DIR", "LOG_LEVEL", "OSU_API_DELAY"]


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create and return temporary data directory."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_settings(tmp_data_dir: Path) -> Generator[Settings, None, None]:
    """Provide test settings with a temporary database.

    Automatically resets the settings singleton and engine after the test.
    """
    from osu_complete.data.db import reset_engine

    os.environ["OSU_DB_PATH"] = str(tmp_data_dir / "test.db")
    os.environ["LOG_DIR"] = str(tmp_data_dir / "logs")
    os.environ["LOG_LEVEL"] = "DEBUG"
    os.environ["OSU_API_DELAY"] = "0"

    reset_settings()
    reset_engine()
    from osu_complete.config import get_settings

    settings = get_settings()
    settings.ensure_directories()

    yield settings

    reset_engine()
    reset_settings()
    for key in ENV_KEYS:
        os.environ.pop(key, None)


@pytest.fixture
def db_session(test_settings: Settings):
    """Session on a freshly initialized temporary database."""
    from osu_complete.data.db import get_session, init_db

    init_db()
    session = get_session()
    yield session
    session.close()


# =============================================================================
# Builders
# =============================================================================


def make_set(
    set_id: int,
    status: str = "ranked",
    charts: list[tuple] | None = None,
    converts: list[tuple] | None = None,
    ranked_date: str = "2020-06-01T00:00:00Z",
    title: str | None = None,
) -> dict[str, Any]:
    """Build a beatmapset payload as returned by the API.

    Charts are ``(id, mode, total_length)`` or ``(id, mode, total_length, cs)``.
    """
    def beatmap(spec: tuple, convert: bool) -> dict[str, Any]:
        chart_id, mode, length, *rest = spec
        return {
            "id": chart_id,
            "beatmapset_id": set_id,
            "mode": mode,
            "status": status,
            "version": f"Diff {chart_id}",
            "difficulty_rating": 4.5,
            "convert": convert,
            "total_length": length,
            "cs": rest[0] if rest else 4.0,
            "ar": 9.0,
            "accuracy": 8.0,
            "drain": 5.0,
            "bpm": 180.0,
        }

    return {
        "id": set_id,
        "status": status,
        "title": title or f"Song {set_id}",
        "artist": "Artist",
        "creator": "Mapper",
        "ranked_date": ranked_date,
        "beatmaps": [beatmap(c, False) for c in (charts or [])],
        "converts": [beatmap(c, True) for c in (converts or [])],
    }


def make_user(user_id: int, name: str | None = None, playcounts: int = 100) -> dict[str, Any]:
    return {
        "id": user_id,
        "username": name or f"player{user_id}",
        "avatar_url": f"https://a.ppy.sh/{user_id}",
        "country_code": "AU",
        "beatmap_playcounts_count": playcounts,
    }


def make_score(
    user_id: int,
    chart_id: int,
    ruleset_id: int = 0,
    ended_at: str = "2024-01-15T12:00:00Z",
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "beatmap_id": chart_id,
        "ruleset_id": ruleset_id,
        "ended_at": ended_at,
    }


# =============================================================================
# Fake API client
# =============================================================================


class FakeApiClient:
    """In-memory stand-in for ``OsuApiClient``.

    Attributes:
        sets: Beatmapset payloads by id.
        users: User payloads by id.
        passed: Player id to ``{(chart_id, mode)}`` passes.
        most_played: Player id to most played entries.
        recent: ``(player_id, mode)`` to recent score lists.
        global_pages: Mode to queued global recents pages.
        calls: Every call as ``(method, args)``.
        fail_after: Method name to successful calls left before it raises.
    """

    def __init__(self) -> None:
        self.sets: dict[int, dict[str, Any]] = {}
        self.users: dict[int, dict[str, Any]] = {}
        self.passed: dict[int, set[tuple[int, str]]] = {}
        self.most_played: dict[int, list[dict[str, Any]]] = {}
        self.recent: dict[tuple[int, str], list[dict[str, Any]]] = {}
        self.global_pages: dict[str, list[list[dict[str, Any]]]] = {}
        self.search_page_size = 50
        self.calls: list[tuple[str, Any]] = []
        self.fail_after: dict[str, int] = {}
        self._cursor_counter = 0

    def _record(self, method: str, args: Any) -> None:
        self.calls.append((method, args))
        if method in self.fail_after:
            if self.fail_after[method] <= 0:
                raise OsuApiError(f"{method} unavailable")
            self.fail_after[method] -= 1

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    # Setup helpers

    def add_set(self, set_id: int, **kwargs: Any) -> dict[str, Any]:
        """Add a beatmapset built with :func:`make_set`."""
        self.sets[set_id] = make_set(set_id, **kwargs)
        return self.sets[set_id]

    @staticmethod
    def score(user_id: int, chart_id: int, **kwargs: Any) -> dict[str, Any]:
        """A score payload built with :func:`make_score`."""
        return make_score(user_id, chart_id, **kwargs)

    def set_status(self, set_id: int, status: str) -> None:
        beatmapset = self.sets[set_id]
        beatmapset["status"] = status
        for beatmap in [*beatmapset["beatmaps"], *beatmapset["converts"]]:
            beatmap["status"] = status

    def add_user(self, user_id: int, **kwargs: Any) -> dict[str, Any]:
        self.users[user_id] = make_user(user_id, **kwargs)
        return self.users[user_id]

    def add_pass(self, user_id: int, chart_id: int, mode: str) -> None:
        self.passed.setdefault(user_id, set()).add((chart_id, mode))

    def _find_beatmap(self, chart_id: int) -> tuple[dict[str, Any], dict[str, Any]] | None:
        for beatmapset in self.sets.values():
            for beatmap in beatmapset["beatmaps"]:
                if beatmap["id"] == chart_id:
                    return beatmapset, beatmap
        return None

    # API surface

    def get_beatmapset(self, beatmapset_id: int) -> dict[str, Any]:
        self._record("get_beatmapset", beatmapset_id)
        if beatmapset_id not in self.sets:
            raise OsuApiNotFoundError(f"Beatmapset {beatmapset_id} not found")
        return copy.deepcopy(self.sets[beatmapset_id])

    def get_beatmaps(self, ids: list[int]) -> list[dict[str, Any]]:
        self._record("get_beatmaps", list(ids))
        assert len(ids) <= 50
        beatmaps = []
        for chart_id in ids:
            found = self._find_beatmap(chart_id)
            if found is None:
                continue
            beatmapset, beatmap = found
            beatmaps.append({
                **copy.deepcopy(beatmap),
                "beatmapset": {
                    "id": beatmapset["id"],
                    "status": beatmapset["status"],
                    "title": beatmapset["title"],
                    "artist": beatmapset["artist"],
                },
            })
        return beatmaps

    def search_beatmapsets(
        self,
        cursor_string: str | None = None,
        sort: str = "ranked_desc",
        nsfw: bool = True,
    ) -> dict[str, Any]:
        self._record("search_beatmapsets", cursor_string)
        ordered = sorted(
            (s for s in self.sets.values() if s["status"] in ("ranked", "approved", "loved")),
            key=lambda s: s["id"],
            reverse=True,
        )
        start = int(cursor_string or 0)
        end = start + self.search_page_size
        return {
            "beatmapsets": [{"id": s["id"], "status": s["status"]} for s in ordered[start:end]],
            "cursor_string": str(end) if end < len(ordered) else None,
        }

    def get_user(self, user_id: int) -> dict[str, Any]:
        self._record("get_user", user_id)
        if user_id not in self.users:
            raise OsuApiNotFoundError(f"User {user_id} not found")
        return dict(self.users[user_id])

    def get_user_beatmaps(
        self,
        user_id: int,
        kind: str = "most_played",
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        self._record("get_user_beatmaps", (user_id, offset))
        return self.most_played.get(user_id, [])[offset:offset + limit]

    def get_user_beatmaps_passed(
        self,
        user_id: int,
        beatmapset_ids: list[int],
        ruleset_id: int,
        exclude_converts: bool = False,
        no_diff_reduction: bool = False,
    ) -> list[dict[str, Any]]:
        self._record("get_user_beatmaps_passed", (user_id, list(beatmapset_ids), ruleset_id))
        mode = RULESETS[ruleset_id]
        passes = self.passed.get(user_id, set())
        result = []
        for set_id in beatmapset_ids:
            beatmapset = self.sets.get(set_id)
            if beatmapset is None:
                continue
            for beatmap in beatmapset["beatmaps"]:
                if (beatmap["id"], mode) in passes:
                    result.append({
                        "id": beatmap["id"],
                        "beatmapset_id": set_id,
                        "mode": beatmap["mode"],
                        "status": beatmapset["status"],
                    })
        return result

    def get_user_scores(
        self,
        user_id: int,
        kind: str = "recent",
        mode: str = "osu",
        limit: int = 50,
        offset: int = 0,
        include_fails: bool = False,
    ) -> list[dict[str, Any]]:
        self._record("get_user_scores", (user_id, mode, offset))
        return self.recent.get((user_id, mode), [])[offset:offset + limit]

    def get_scores(self, ruleset: str, cursor_string: str | None = None) -> dict[str, Any]:
        self._record("get_scores", (ruleset, cursor_string))
        pages = self.global_pages.get(ruleset, [])
        scores = pages.pop(0) if pages else []
        self._cursor_counter += 1
        return {"scores": scores, "cursor_string": f"{ruleset}-{self._cursor_counter}"}


@pytest.fixture
def fake_api() -> FakeApiClient:
    """Fresh in-memory API client."""
    return FakeApiClient()


class RecordingNotifier:
    """Notifier that keeps every message instead of posting it."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []

    def send(self, channel: str, payload: dict[str, Any]) -> bool:
        self.messages.append((channel, payload))
        return True

    def send_embeds(self, channel: str, embeds: list[dict[str, Any]]) -> None:
        for start in range(0, len(embeds), 10):
            self.send(channel, {"embeds": embeds[start:start + 10]})

    def on(self, channel: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.messages if name == channel]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# =============================================================================
# Marker Helpers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
