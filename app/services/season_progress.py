"""Per-season watched/total aggregation for a show."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from ..models import SeasonProgress, SeasonProgressResult, WatchedEpisodeKey
from .sources import ContentMetadata

logger = logging.getLogger(__name__)


def aggregate_season_progress(
    show_id: str,
    watched_keys: Iterable[WatchedEpisodeKey],
    season_episodes: dict[int, list[int] | None],
) -> SeasonProgressResult:
    """Fold per-season episode lists against the watched set.

    ``season_episodes`` maps a season number to its episodes in metadata
    order, or to ``None`` when that season could not be fetched. Failed
    seasons contribute nothing but do not stop the scan.
    """

    show_keys = {key for key in watched_keys if key.show_id == show_id}
    watched_by_season: dict[int, set[int]] = {}
    for key in show_keys:
        watched_by_season.setdefault(key.season, set()).add(key.episode)

    progress: dict[int, SeasonProgress] = {}
    next_unwatched: tuple[int, int] | None = None

    for season_number in sorted(season_episodes):
        episodes = season_episodes[season_number]
        if episodes is None:
            continue
        watched = watched_by_season.get(season_number, set())
        total = len(episodes)
        watched_count = min(len(watched), total)
        progress[season_number] = SeasonProgress(
            season_number=season_number,
            watched_count=watched_count,
            total_count=total,
        )
        if next_unwatched is None:
            first_missing = next(
                (episode for episode in episodes if episode not in watched), None
            )
            if first_missing is not None:
                next_unwatched = (season_number, first_missing)

    return SeasonProgressResult(
        season_progress=progress,
        has_any_watched=bool(show_keys),
        next_unwatched=next_unwatched,
    )


class SeasonProgressAggregator:
    """Fetch season structure concurrently and aggregate watched counts."""

    def __init__(self, metadata: ContentMetadata, *, max_concurrency: int = 4):
        self._metadata = metadata
        self._max_concurrency = max(1, max_concurrency)

    async def compute(
        self, show_id: str, watched_keys: Iterable[WatchedEpisodeKey]
    ) -> SeasonProgressResult:
        keys = frozenset(watched_keys)
        try:
            season_count = await self._metadata.get_season_count(show_id)
        except Exception as exc:
            logger.warning("Could not load season count for show %s: %s", show_id, exc)
            return SeasonProgressResult(has_any_watched=any(k.show_id == show_id for k in keys))

        season_episodes = await self.fetch_seasons(show_id, range(1, season_count + 1))
        return aggregate_season_progress(show_id, keys, season_episodes)

    async def fetch_seasons(
        self, show_id: str, seasons: Iterable[int]
    ) -> dict[int, list[int] | None]:
        """Load episode lists for ``seasons`` with bounded concurrency."""

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _load(season: int) -> tuple[int, list[int] | None]:
            async with semaphore:
                try:
                    return season, await self._metadata.get_season_episodes(show_id, season)
                except Exception as exc:
                    logger.info(
                        "Skipping season %s of show %s, metadata unavailable: %s",
                        season,
                        show_id,
                        exc,
                    )
                    return season, None

        results = await asyncio.gather(*(_load(season) for season in seasons))
        return dict(results)
