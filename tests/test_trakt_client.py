"""Tests for the Trakt API client."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.models import WatchedEpisodeKey
from app.services.trakt import TraktClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base = {
        "TRAKT_CLIENT_ID": "client-id",
        "TRAKT_ACCESS_TOKEN": "access-token",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


@pytest.mark.anyio("asyncio")
async def test_watched_shows_are_keyed_by_tmdb_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/sync/watched/shows"
        assert request.headers["Authorization"] == "Bearer access-token"
        assert request.headers["trakt-api-key"] == "client-id"
        return httpx.Response(
            200,
            json=[
                {
                    "show": {"title": "Game of Thrones", "ids": {"trakt": 1, "tmdb": 1399}},
                    "seasons": [
                        {"number": 1, "episodes": [{"number": 1}, {"number": 2}]},
                        {"number": 2, "episodes": [{"number": 1}]},
                    ],
                },
                {"show": {"title": "No TMDB id", "ids": {"trakt": 2}}, "seasons": []},
            ],
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        keys = await client.get_watched_episode_keys("p1")

    assert keys == {
        WatchedEpisodeKey("1399", 1, 1),
        WatchedEpisodeKey("1399", 1, 2),
        WatchedEpisodeKey("1399", 2, 1),
    }


@pytest.mark.anyio("asyncio")
async def test_profile_token_takes_precedence() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json=[{"movie": {"ids": {"tmdb": 550}}}])

    async def token_provider(profile_id: str) -> str | None:
        return {"p1": "profile-token"}.get(profile_id)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client, token_provider=token_provider)
        assert await client.get_watched_movie_ids("p1") == {"550"}
        assert await client.get_watched_movie_ids("p2") == {"550"}

    assert seen == ["Bearer profile-token", "Bearer access-token"]


@pytest.mark.anyio("asyncio")
async def test_missing_credentials_skip_remote_calls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("no request expected")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(TRAKT_ACCESS_TOKEN=""), http_client)
        assert await client.is_authenticated("p1") is False
        assert await client.get_continue_watching("p1") == []
        assert await client.mark_movie_watched("p1", "550") is False


@pytest.mark.anyio("asyncio")
async def test_playback_is_sorted_and_converted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/sync/playback"
        return httpx.Response(
            200,
            json=[
                {
                    "type": "movie",
                    "progress": 42.5,
                    "paused_at": "2024-01-01T10:00:00.000Z",
                    "movie": {"title": "Fight Club", "ids": {"tmdb": 550}},
                },
                {
                    "type": "episode",
                    "progress": 10,
                    "paused_at": "2024-02-01T10:00:00.000Z",
                    "show": {"title": "Game of Thrones", "ids": {"tmdb": 1399}},
                    "episode": {"season": 1, "number": 3, "title": "Lord Snow"},
                },
                {"type": "episode", "progress": 5, "show": {"ids": {}}, "episode": {}},
            ],
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        records = await client.get_continue_watching("p1")

    assert [(record.content_id, record.media_type) for record in records] == [
        ("1399", "series"),
        ("550", "movie"),
    ]
    episode, movie = records
    assert (episode.season, episode.episode, episode.episode_title) == (1, 3, "Lord Snow")
    assert episode.fraction_complete == pytest.approx(0.1)
    assert movie.fraction_complete == pytest.approx(0.425)
    assert {record.source_origin for record in records} == {"remote_fresh"}


@pytest.mark.anyio("asyncio")
async def test_mark_episode_posts_history_payload() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"added": {"episodes": 1}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        assert await client.mark_episode_watched("p1", "1399", 2, 5) is True
        assert await client.mark_episode_unwatched("p1", "1399", 2, 5) is True

    assert [request.url.path for request in requests] == ["/sync/history", "/sync/history/remove"]
    body = json.loads(requests[0].content)
    assert body == {
        "shows": [
            {"ids": {"tmdb": 1399}, "seasons": [{"number": 2, "episodes": [{"number": 5}]}]}
        ]
    }


@pytest.mark.anyio("asyncio")
async def test_rejected_request_returns_none(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_grant"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        with caplog.at_level("WARNING"):
            assert await client.get_watched_movie_ids("p1") is None

    assert "rejected (401)" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_server_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []

    async def no_sleep(_: float) -> None:
        return None

    monkeypatch.setattr("app.services.trakt.asyncio.sleep", no_sleep)

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=[])

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        assert await client.get_watched_movie_ids("p1") == set()

    assert len(attempts) == 3


@pytest.mark.anyio("asyncio")
async def test_missing_show_history_is_distinct_from_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sync/watched/shows":
            return httpx.Response(429, json={"error": "rate limited"})
        return httpx.Response(200, json=[])

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        assert await client.get_watched_episode_keys("p1") is None
        assert await client.get_watched_movie_ids("p1") == set()
