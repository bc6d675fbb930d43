"""Utilities for communicating with the Trakt API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from ..config import Settings
from ..models import ProgressRecord, WatchedEpisodeKey

logger = logging.getLogger(__name__)

TokenProvider = Callable[[str], Awaitable[str | None]]


class TraktClient:
    """Thin wrapper around the Trakt HTTP API, scoped per profile.

    Implements the remote watch-history contract. Profiles without an
    access token are treated as unauthenticated and every remote read
    degrades to an empty result.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        token_provider: TokenProvider | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._token_provider = token_provider
        self._max_retries = 3
        self._page_size = 100

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {
            "trakt-api-version": "2",
            "Content-Type": "application/json",
            "User-Agent": f"{self._settings.app_name} (watchstate)",
        }
        if self._settings.trakt_client_id:
            headers["trakt-api-key"] = self._settings.trakt_client_id
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _resolve_token(self, profile_id: str) -> str | None:
        token: str | None = None
        if self._token_provider is not None:
            try:
                token = await self._token_provider(profile_id)
            except Exception:  # pragma: no cover - logging branch
                logger.exception("Failed to resolve Trakt token for profile %s", profile_id)
                token = None
        return token or self._settings.trakt_access_token

    async def is_authenticated(self, profile_id: str) -> bool:
        if not self._settings.trakt_client_id:
            return False
        return bool(await self._resolve_token(profile_id))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response | None:
        """Send a request, retrying transient errors and 5xx responses."""

        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=self._headers(access_token),
                    params=params,
                    json=json,
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to Trakt %s (%s). Retrying in %.1fs",
                        url,
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("Trakt request %s %s failed: %s", method, url, exc)
                return None

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Trakt 5xx for %s. Retrying in %.1fs", url, backoff
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("Trakt request %s %s failed: %s", method, url, response.text)
                return None
            if response.status_code >= 400:
                logger.warning(
                    "Trakt request %s %s rejected (%s): %s",
                    method,
                    url,
                    response.status_code,
                    response.text,
                )
                return None
            return response

    async def _get_json_list(
        self, url: str, *, access_token: str, params: dict[str, Any] | None = None
    ) -> list[Any] | None:
        response = await self._request("GET", url, access_token=access_token, params=params)
        if response is None:
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON Trakt response for %s", url)
            return None
        if not isinstance(data, list):
            logger.warning("Unexpected Trakt response structure for %s", url)
            return None
        return data

    async def get_watched_episode_keys(self, profile_id: str) -> set[WatchedEpisodeKey] | None:
        """Return every episode the profile has watched, keyed by TMDB show id.

        Returns ``None`` when Trakt could not be read, so callers can tell a
        failed fetch from a profile that has watched nothing.
        """

        token = await self._resolve_token(profile_id)
        if not (token and self._settings.trakt_client_id):
            logger.info("Trakt credentials missing for %s, no watched episodes", profile_id)
            return set()

        data = await self._get_json_list("/sync/watched/shows", access_token=token)
        if data is None:
            return None

        keys: set[WatchedEpisodeKey] = set()
        for entry in data:
            if not isinstance(entry, dict):
                continue
            show_id = self._tmdb_id(entry.get("show"))
            if show_id is None:
                continue
            for season in entry.get("seasons") or []:
                if not isinstance(season, dict) or not isinstance(season.get("number"), int):
                    continue
                for episode in season.get("episodes") or []:
                    if isinstance(episode, dict) and isinstance(episode.get("number"), int):
                        keys.add(
                            WatchedEpisodeKey(show_id, season["number"], episode["number"])
                        )
        return keys

    async def get_watched_movie_ids(self, profile_id: str) -> set[str] | None:
        token = await self._resolve_token(profile_id)
        if not (token and self._settings.trakt_client_id):
            logger.info("Trakt credentials missing for %s, no watched movies", profile_id)
            return set()

        data = await self._get_json_list("/sync/watched/movies", access_token=token)
        if data is None:
            return None
        watched: set[str] = set()
        for entry in data:
            if isinstance(entry, dict):
                movie_id = self._tmdb_id(entry.get("movie"))
                if movie_id is not None:
                    watched.add(movie_id)
        return watched

    async def get_continue_watching(self, profile_id: str) -> list[ProgressRecord]:
        """Return paused playback entries, most recently paused first."""

        token = await self._resolve_token(profile_id)
        if not (token and self._settings.trakt_client_id):
            logger.info("Trakt credentials missing for %s, skipping playback", profile_id)
            return []

        collected: list[dict[str, Any]] = []
        page = 1
        limit = self._settings.max_progress_entries
        while len(collected) < limit:
            params = {"page": page, "limit": self._page_size}
            data = await self._get_json_list("/sync/playback", access_token=token, params=params)
            if not data:
                break
            collected.extend(item for item in data if isinstance(item, dict))
            if len(data) < self._page_size:
                break
            page += 1

        collected.sort(key=lambda item: self._parse_timestamp(item.get("paused_at")), reverse=True)
        records: list[ProgressRecord] = []
        for item in collected[:limit]:
            record = self._playback_to_record(item)
            if record is not None:
                records.append(record)
        return records

    async def mark_episode_watched(
        self, profile_id: str, show_id: str, season: int, episode: int
    ) -> bool:
        return await self._sync_history(
            profile_id, self._episode_payload(show_id, season, episode), remove=False
        )

    async def mark_episode_unwatched(
        self, profile_id: str, show_id: str, season: int, episode: int
    ) -> bool:
        return await self._sync_history(
            profile_id, self._episode_payload(show_id, season, episode), remove=True
        )

    async def mark_movie_watched(self, profile_id: str, movie_id: str) -> bool:
        return await self._sync_history(
            profile_id, {"movies": [{"ids": {"tmdb": self._as_int(movie_id)}}]}, remove=False
        )

    async def mark_movie_unwatched(self, profile_id: str, movie_id: str) -> bool:
        return await self._sync_history(
            profile_id, {"movies": [{"ids": {"tmdb": self._as_int(movie_id)}}]}, remove=True
        )

    async def _sync_history(
        self, profile_id: str, payload: dict[str, Any], *, remove: bool
    ) -> bool:
        token = await self._resolve_token(profile_id)
        if not (token and self._settings.trakt_client_id):
            logger.info("Trakt credentials missing for %s, history not synced", profile_id)
            return False
        url = "/sync/history/remove" if remove else "/sync/history"
        response = await self._request("POST", url, access_token=token, json=payload)
        return response is not None

    def _episode_payload(self, show_id: str, season: int, episode: int) -> dict[str, Any]:
        return {
            "shows": [
                {
                    "ids": {"tmdb": self._as_int(show_id)},
                    "seasons": [{"number": season, "episodes": [{"number": episode}]}],
                }
            ]
        }

    def _playback_to_record(self, item: dict[str, Any]) -> ProgressRecord | None:
        progress = item.get("progress")
        fraction = float(progress) / 100 if isinstance(progress, (int, float)) else 0.0
        updated_at = self._parse_timestamp(item.get("paused_at"))
        stamp = updated_at if updated_at != datetime.min else None

        if item.get("type") == "movie":
            movie = item.get("movie")
            movie_id = self._tmdb_id(movie)
            if movie_id is None:
                return None
            return ProgressRecord(
                content_id=movie_id,
                media_type="movie",
                fraction_complete=fraction,
                title=movie.get("title"),
                source_origin="remote_fresh",
                updated_at=stamp,
            )
        if item.get("type") == "episode":
            show = item.get("show")
            episode = item.get("episode")
            show_id = self._tmdb_id(show)
            if show_id is None or not isinstance(episode, dict):
                return None
            return ProgressRecord(
                content_id=show_id,
                media_type="series",
                season=episode.get("season"),
                episode=episode.get("number"),
                fraction_complete=fraction,
                title=show.get("title"),
                episode_title=episode.get("title"),
                source_origin="remote_fresh",
                updated_at=stamp,
            )
        return None

    @staticmethod
    def _tmdb_id(media: Any) -> str | None:
        if not isinstance(media, dict):
            return None
        ids = media.get("ids")
        if not isinstance(ids, dict):
            return None
        tmdb = ids.get("tmdb")
        if tmdb is None or tmdb == "":
            return None
        return str(tmdb)

    @staticmethod
    def _as_int(value: str) -> int | str:
        try:
            return int(value)
        except (TypeError, ValueError):
            return value

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime:
        if not isinstance(value, str):
            return datetime.min
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min
        return parsed.replace(tzinfo=None)
