"""Continue-watching precedence and filtering."""

from __future__ import annotations

from app.models import ProgressRecord, WatchedEpisodeKey
from app.services.continue_watching import (
    dedupe_records,
    filter_remote_playback,
    resolve_continue_watching,
    select_source,
)


def _movie(content_id: str, fraction: float = 0.4, *, title: str | None = "Movie", origin="local"):
    return ProgressRecord(
        content_id=content_id,
        media_type="movie",
        fraction_complete=fraction,
        title=title,
        source_origin=origin,
    )


def _episode(show_id: str, season: int, episode: int, fraction: float = 0.3, origin="remote_fresh"):
    return ProgressRecord(
        content_id=show_id,
        media_type="series",
        season=season,
        episode=episode,
        fraction_complete=fraction,
        title="Show",
        source_origin=origin,
    )


def test_fresh_remote_wins_and_is_never_blended():
    fresh = [_movie("1", origin="remote_fresh")]
    cached = [_movie("2", origin="remote_cached")]
    local = [_movie("3")]

    entries = resolve_continue_watching(fresh, cached, local)

    assert [entry.content_id for entry in entries] == ["1"]


def test_cached_remote_used_when_fresh_empty():
    origin, records = select_source([], [_movie("2")], [_movie("3")])

    assert origin == "remote_cached"
    assert [record.content_id for record in records] == ["2"]


def test_local_history_is_last_resort():
    entries = resolve_continue_watching([], [], [_movie("3")])

    assert [entry.content_id for entry in entries] == ["3"]
    assert resolve_continue_watching([], [], []) == []


def test_duplicates_keep_first_occurrence():
    first = _episode("1399", 1, 2, fraction=0.7)
    duplicate = _episode("1399", 1, 2, fraction=0.1)
    other = _episode("1399", 1, 3)

    assert dedupe_records([first, duplicate, other]) == [first, other]


def test_untitled_entries_are_dropped_and_limit_applies():
    records = [_movie("0", title=None)] + [_movie(str(index)) for index in range(1, 30)]

    entries = resolve_continue_watching(records, [], [], limit=20)

    assert len(entries) == 20
    assert entries[0].content_id == "1"


def test_filter_remote_playback_removes_finished_and_watched():
    records = [
        _movie("550", fraction=0.95),
        _movie("551", fraction=0.5),
        _movie("552", fraction=0.9),
        _episode("1399", 1, 1),
        _episode("1399", 1, 2),
    ]

    kept = filter_remote_playback(
        records,
        watched_episodes=frozenset({WatchedEpisodeKey("1399", 1, 1)}),
        watched_movies=frozenset({"551"}),
        threshold_percent=90,
    )

    assert [(record.content_id, record.episode) for record in kept] == [("552", None), ("1399", 2)]
