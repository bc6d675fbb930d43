"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))



import asyncio  # noqa: E402

import pytest  # noqa: E402

from app.config import Settings  # noqa: E402
from app.models import ProgressRecord, WatchedEpisodeKey  # noqa: E402


class FakeLocalStore:
    """In-memory local history keyed by profile."""

    def __init__(self) -> None:
        self.progress: dict[str, list[ProgressRecord]] = {}
        self.snapshots: dict[str, list[ProgressRecord]] = {}
        self.removed: list[tuple[str, str, int | None, int | None]] = []

    async def get_continue_watching(self, profile_id):
        return [
            record
            for record in self.progress.get(profile_id, [])
            if 0 < record.fraction_complete < 1
        ]

    async def get_latest_progress(self, profile_id, content_id, media_type=None):
        for record in self.progress.get(profile_id, []):
            if record.content_id == content_id and media_type in (None, record.media_type):
                return record
        return None

    async def remove_from_history(self, profile_id, content_id, season=None, episode=None):
        self.removed.append((profile_id, content_id, season, episode))
        self.progress[profile_id] = [
            record
            for record in self.progress.get(profile_id, [])
            if not (
                record.content_id == content_id
                and season in (None, record.season)
                and episode in (None, record.episode)
            )
        ]

    async def save_progress(self, profile_id, record):
        existing = [
            item
            for item in self.progress.get(profile_id, [])
            if item.dedupe_key() != record.dedupe_key()
        ]
        self.progress[profile_id] = [record, *existing]

    async def load_remote_snapshot(self, profile_id):
        return [record.with_origin("remote_cached") for record in self.snapshots.get(profile_id, [])]

    async def store_remote_snapshot(self, profile_id, records):
        self.snapshots[profile_id] = list(records)


class FakeRemote:
    """Remote watch history with per-profile data and optional stalls."""

    def __init__(self) -> None:
        self.authenticated: set[str] = {"p1", "p2"}
        self.episodes: dict[str, set[WatchedEpisodeKey]] = {}
        self.movies: dict[str, set[str]] = {}
        self.playback: dict[str, list[ProgressRecord]] = {}
        self.playback_delay = 0.0
        self.watched_gate: asyncio.Event | None = None
        self.marks: list[tuple] = []
        self.playback_calls = 0
        self.watched_failures = 0
        self.movies_error: Exception | None = None
        self.watched_calls = 0

    async def is_authenticated(self, profile_id):
        return profile_id in self.authenticated

    async def get_watched_episode_keys(self, profile_id):
        if self.watched_gate is not None:
            await self.watched_gate.wait()
        self.watched_calls += 1
        if self.watched_failures:
            self.watched_failures -= 1
            return None
        return set(self.episodes.get(profile_id, set()))

    async def get_watched_movie_ids(self, profile_id):
        if self.movies_error is not None:
            raise self.movies_error
        return set(self.movies.get(profile_id, set()))

    async def get_continue_watching(self, profile_id):
        self.playback_calls += 1
        if self.playback_delay:
            await asyncio.sleep(self.playback_delay)
        return list(self.playback.get(profile_id, []))

    async def mark_episode_watched(self, profile_id, show_id, season, episode):
        self.marks.append(("episode", profile_id, show_id, season, episode, True))
        return True

    async def mark_episode_unwatched(self, profile_id, show_id, season, episode):
        self.marks.append(("episode", profile_id, show_id, season, episode, False))
        return True

    async def mark_movie_watched(self, profile_id, movie_id):
        self.marks.append(("movie", profile_id, movie_id, True))
        return True

    async def mark_movie_unwatched(self, profile_id, movie_id):
        self.marks.append(("movie", profile_id, movie_id, False))
        return True


class FakeMetadata:
    """Static season layouts and runtimes."""

    def __init__(self) -> None:
        self.seasons: dict[str, dict[int, list[int]]] = {}
        self.runtimes: dict[str, int] = {}

    async def get_season_count(self, show_id):
        return len(self.seasons.get(show_id, {}))

    async def get_season_episodes(self, show_id, season):
        return list(self.seasons[show_id][season])

    async def get_season_episode_count(self, show_id, season):
        return len(self.seasons[show_id][season])

    async def get_runtime_minutes(self, content_id, media_type, season=None, episode=None):
        return self.runtimes.get(content_id, 0)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        TRAKT_CLIENT_ID="client-id",
        REMOTE_TIMEOUT_SECONDS=0.5,
    )  # type: ignore[call-arg]


@pytest.fixture
def local_store() -> FakeLocalStore:
    return FakeLocalStore()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def metadata() -> FakeMetadata:
    return FakeMetadata()
