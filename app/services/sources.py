"""Contracts for the data sources the watch-state engine reconciles."""

from __future__ import annotations

from typing import Iterable, Protocol

from ..models import MediaType, ProgressRecord, WatchedEpisodeKey


class LocalHistoryStore(Protocol):
    """Device-local playback progress, scoped per profile."""

    async def get_continue_watching(self, profile_id: str) -> list[ProgressRecord]:
        """Return in-progress records, most recently updated first."""
        ...

    async def get_latest_progress(
        self,
        profile_id: str,
        content_id: str,
        media_type: MediaType | None = None,
    ) -> ProgressRecord | None:
        """Return the most recent progress record for a title."""
        ...

    async def remove_from_history(
        self,
        profile_id: str,
        content_id: str,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        """Drop progress for a title, or for one of its episodes."""
        ...

    async def save_progress(self, profile_id: str, record: ProgressRecord) -> None:
        """Insert or replace progress for the record's composite key."""
        ...

    async def load_remote_snapshot(self, profile_id: str) -> list[ProgressRecord]:
        """Return the last known-good remote continue-watching list."""
        ...

    async def store_remote_snapshot(
        self, profile_id: str, records: Iterable[ProgressRecord]
    ) -> None:
        """Persist a successfully fetched remote continue-watching list."""
        ...


class RemoteWatchHistory(Protocol):
    """Cross-device watch history service."""

    async def is_authenticated(self, profile_id: str) -> bool:
        ...

    async def get_watched_episode_keys(self, profile_id: str) -> set[WatchedEpisodeKey] | None:
        """Return watched episodes, or ``None`` when the fetch failed."""
        ...

    async def get_watched_movie_ids(self, profile_id: str) -> set[str] | None:
        """Return watched movie ids, or ``None`` when the fetch failed."""
        ...

    async def get_continue_watching(self, profile_id: str) -> list[ProgressRecord]:
        """Return paused playback entries, most recent first."""
        ...

    async def mark_episode_watched(
        self, profile_id: str, show_id: str, season: int, episode: int
    ) -> bool:
        ...

    async def mark_episode_unwatched(
        self, profile_id: str, show_id: str, season: int, episode: int
    ) -> bool:
        ...

    async def mark_movie_watched(self, profile_id: str, movie_id: str) -> bool:
        ...

    async def mark_movie_unwatched(self, profile_id: str, movie_id: str) -> bool:
        ...


class ContentMetadata(Protocol):
    """Season/episode structure and runtimes for titles."""

    async def get_season_count(self, show_id: str) -> int:
        ...

    async def get_season_episodes(self, show_id: str, season: int) -> list[int]:
        """Return episode numbers in the service's episode order."""
        ...

    async def get_season_episode_count(self, show_id: str, season: int) -> int:
        ...

    async def get_runtime_minutes(
        self,
        content_id: str,
        media_type: MediaType,
        season: int | None = None,
        episode: int | None = None,
    ) -> int:
        ...


class MetadataUnavailableError(LookupError):
    """Raised by :class:`UnconfiguredMetadata` for every lookup."""


class UnconfiguredMetadata:
    """Stand-in used when no metadata provider is configured.

    Every lookup fails, which the engine treats as missing data: season
    progress comes back empty and resume points skip the runtime fallback.
    """

    async def get_season_count(self, show_id: str) -> int:
        raise MetadataUnavailableError("No metadata provider configured")

    async def get_season_episodes(self, show_id: str, season: int) -> list[int]:
        raise MetadataUnavailableError("No metadata provider configured")

    async def get_season_episode_count(self, show_id: str, season: int) -> int:
        raise MetadataUnavailableError("No metadata provider configured")

    async def get_runtime_minutes(
        self,
        content_id: str,
        media_type: MediaType,
        season: int | None = None,
        episode: int | None = None,
    ) -> int:
        raise MetadataUnavailableError("No metadata provider configured")
