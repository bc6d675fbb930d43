"""Season progress aggregation."""

from __future__ import annotations

import asyncio

import pytest

from app.models import WatchedEpisodeKey
from app.services.season_progress import SeasonProgressAggregator, aggregate_season_progress


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeMetadata:
    def __init__(self, seasons: dict[int, list[int]], *, failing: set[int] | None = None):
        self.seasons = seasons
        self.failing = failing or set()
        self.in_flight = 0
        self.peak = 0

    async def get_season_count(self, show_id: str) -> int:
        return len(self.seasons)

    async def get_season_episodes(self, show_id: str, season: int) -> list[int]:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0)
            if season in self.failing:
                raise LookupError(f"season {season} unavailable")
            return list(self.seasons[season])
        finally:
            self.in_flight -= 1

    async def get_season_episode_count(self, show_id: str, season: int) -> int:
        return len(await self.get_season_episodes(show_id, season))

    async def get_runtime_minutes(self, content_id, media_type, season=None, episode=None) -> int:
        return 0


def _first_season_watched(show_id: str = "1399") -> set[WatchedEpisodeKey]:
    return {WatchedEpisodeKey(show_id, 1, episode) for episode in range(1, 11)}


def test_aggregate_full_first_season() -> None:
    result = aggregate_season_progress(
        "1399",
        _first_season_watched(),
        {1: list(range(1, 11)), 2: list(range(1, 9))},
    )

    counts = {
        number: (season.watched_count, season.total_count)
        for number, season in result.season_progress.items()
    }
    assert counts == {1: (10, 10), 2: (0, 8)}
    assert result.next_unwatched == (2, 1)
    assert result.has_any_watched is True


def test_aggregate_ignores_other_shows_and_clamps_counts() -> None:
    watched = _first_season_watched() | {WatchedEpisodeKey("1399", 1, 99)}
    watched |= {WatchedEpisodeKey("other", 2, 1)}

    result = aggregate_season_progress("1399", watched, {1: list(range(1, 11)), 2: [1, 2]})

    assert result.season_progress[1].watched_count == 10
    assert result.season_progress[2].watched_count == 0


def test_aggregate_skips_failed_seasons_without_losing_later_ones() -> None:
    result = aggregate_season_progress(
        "1399",
        {WatchedEpisodeKey("1399", 2, 1)},
        {1: None, 2: [1, 2, 3]},
    )

    assert 1 not in result.season_progress
    assert result.season_progress[2].watched_count == 1
    assert result.next_unwatched == (2, 2)


def test_aggregate_follows_metadata_episode_order() -> None:
    result = aggregate_season_progress(
        "1399",
        {WatchedEpisodeKey("1399", 1, 3)},
        {1: [3, 1, 2]},
    )

    assert result.next_unwatched == (1, 1)


def test_fully_watched_show_has_no_next_episode() -> None:
    result = aggregate_season_progress("1399", _first_season_watched(), {1: list(range(1, 11))})

    assert result.next_unwatched is None
    assert result.has_any_watched is True


@pytest.mark.anyio("asyncio")
async def test_aggregator_bounds_concurrency() -> None:
    metadata = FakeMetadata({number: [1, 2] for number in range(1, 11)})
    aggregator = SeasonProgressAggregator(metadata, max_concurrency=2)

    result = await aggregator.compute("1399", set())

    assert len(result.season_progress) == 10
    assert metadata.peak <= 2
    assert result.has_any_watched is False


@pytest.mark.anyio("asyncio")
async def test_aggregator_tolerates_failed_season_fetch() -> None:
    metadata = FakeMetadata({1: [1, 2], 2: [1, 2], 3: [1]}, failing={2})
    aggregator = SeasonProgressAggregator(metadata)

    result = await aggregator.compute("1399", {WatchedEpisodeKey("1399", 1, 1)})

    assert sorted(result.season_progress) == [1, 3]
    assert result.next_unwatched == (1, 2)


@pytest.mark.anyio("asyncio")
async def test_aggregator_returns_empty_when_season_count_fails() -> None:
    class Broken(FakeMetadata):
        async def get_season_count(self, show_id: str) -> int:
            raise LookupError("show unknown")

    aggregator = SeasonProgressAggregator(Broken({}))

    result = await aggregator.compute("1399", _first_season_watched())

    assert result.season_progress == {}
    assert result.has_any_watched is True
