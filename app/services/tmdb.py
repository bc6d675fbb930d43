"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import MediaType

logger = logging.getLogger(__name__)


class TMDBClient:
    """Client answering season structure and runtime questions from TMDB.

    Season payloads are memoised per client because the aggregator and the
    runtime fallback often ask for the same season within one query.
    """

    _MAX_CACHED_SEASONS = 512

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client
        self._season_cache: dict[tuple[str, int], dict[str, Any]] = {}

    async def get_season_count(self, show_id: str) -> int:
        details = await self._get(f"/tv/{show_id}")
        count = details.get("number_of_seasons")
        return count if isinstance(count, int) and count > 0 else 0

    async def get_season_episodes(self, show_id: str, season: int) -> list[int]:
        """Return episode numbers in TMDB's order for the season."""

        payload = await self._get_season(show_id, season)
        episodes = payload.get("episodes") or []
        return [
            episode["episode_number"]
            for episode in episodes
            if isinstance(episode, dict) and isinstance(episode.get("episode_number"), int)
        ]

    async def get_season_episode_count(self, show_id: str, season: int) -> int:
        return len(await self.get_season_episodes(show_id, season))

    async def get_runtime_minutes(
        self,
        content_id: str,
        media_type: MediaType,
        season: int | None = None,
        episode: int | None = None,
    ) -> int:
        """Return the runtime in minutes, or ``0`` when TMDB does not know it.

        Series prefer the show's average episode runtime and fall back to the
        specific episode's runtime, then to any runtime listed in the season.
        """

        if media_type == "movie":
            details = await self._get(f"/movie/{content_id}")
            runtime = details.get("runtime")
            return runtime if isinstance(runtime, int) and runtime > 0 else 0

        details = await self._get(f"/tv/{content_id}")
        runtimes = details.get("episode_run_time") or []
        average = next((value for value in runtimes if isinstance(value, int) and value > 0), 0)
        if average > 0:
            return average
        if season is None or episode is None:
            return 0

        payload = await self._get_season(content_id, season)
        episodes = [entry for entry in payload.get("episodes") or [] if isinstance(entry, dict)]
        for entry in episodes:
            if entry.get("episode_number") == episode and isinstance(entry.get("runtime"), int):
                return entry["runtime"]
        for entry in episodes:
            if isinstance(entry.get("runtime"), int):
                return entry["runtime"]
        return 0

    async def _get_season(self, show_id: str, season: int) -> dict[str, Any]:
        cache_key = (show_id, season)
        cached = self._season_cache.get(cache_key)
        if cached is not None:
            return cached
        payload = await self._get(f"/tv/{show_id}/season/{season}")
        if len(self._season_cache) >= self._MAX_CACHED_SEASONS:
            self._season_cache.clear()
        self._season_cache[cache_key] = payload
        return payload

    async def _get(self, endpoint: str) -> dict[str, Any]:
        """Fetch a TMDB resource, raising ``httpx.HTTPError`` on failure."""

        response = await self._client.get(
            endpoint, params={"api_key": self._settings.tmdb_api_key}
        )
        if response.status_code >= 400:
            logger.warning("TMDB request %s failed: %s", endpoint, response.text)
            response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected TMDB payload for {endpoint}")
        return data
