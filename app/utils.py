"""Utility helpers for the WatchState service."""

from __future__ import annotations

ONE_DAY_SECONDS = 86_400
MOVIE_SENTINEL = -1


def normalize_seconds(value: int | None) -> int:
    """Return ``value`` in seconds, dividing millisecond inputs by 1000.

    Upstream sources disagree on units. Anything larger than one day is
    assumed to have been delivered in milliseconds.
    """

    if not value:
        return 0
    value = int(value)
    if value > ONE_DAY_SECONDS:
        return value // 1000
    return value


def format_resume_time(seconds: int) -> str:
    """Format a playback offset as ``H:MM:SS`` or ``M:SS``."""

    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def continue_watching_key(
    media_type: str,
    content_id: str,
    season: int | None,
    episode: int | None,
) -> str:
    """Return the de-duplication key for a continue-watching candidate."""

    if media_type == "movie":
        season = episode = None
    season_part = MOVIE_SENTINEL if season is None else season
    episode_part = MOVIE_SENTINEL if episode is None else episode
    return f"{media_type}:{content_id}:{season_part}:{episode_part}"


def clamp_percent(fraction: float) -> int:
    """Convert a completion fraction into a whole percentage in ``[0, 100]``."""

    try:
        percent = round(float(fraction) * 100)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, percent))
