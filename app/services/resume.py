"""Resume point calculation from progress records."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from ..models import (
    MediaType,
    PlayTarget,
    ProgressRecord,
    ResumeTarget,
    SeasonProgressResult,
)
from ..utils import format_resume_time, normalize_seconds

logger = logging.getLogger(__name__)

RuntimeLookup = Callable[[], Awaitable[int]]


async def _runtime_seconds(lookup: RuntimeLookup | None) -> int:
    """Run the runtime fallback, treating any failure as an unknown runtime."""

    if lookup is None:
        return 0
    try:
        minutes = await lookup()
    except Exception as exc:
        logger.info("Runtime lookup failed, resume falls back to none: %s", exc)
        return 0
    if not isinstance(minutes, (int, float)) or minutes <= 0:
        return 0
    return int(minutes * 60)


async def compute_resume_seconds(
    record: ProgressRecord, runtime_lookup: RuntimeLookup | None = None
) -> int:
    """Return the playback offset in seconds for a progress record."""

    position = normalize_seconds(record.position_seconds)
    duration = normalize_seconds(record.duration_seconds)
    fraction = record.fraction_complete

    if position > 0:
        seconds = position
    elif duration > 0 and fraction > 0:
        seconds = int(duration * fraction)
    else:
        seconds = 0

    if seconds == 0 and fraction > 0:
        runtime = await _runtime_seconds(runtime_lookup)
        if runtime > 0:
            seconds = int(runtime * fraction)
    return seconds


async def build_resume_target(
    record: ProgressRecord, runtime_lookup: RuntimeLookup | None = None
) -> ResumeTarget | None:
    """Convert a progress record into a resume target.

    Returns ``None`` when the content is unstarted or finished, and for
    series records missing either the season or the episode.
    """

    if record.media_type == "series" and (record.season is None or record.episode is None):
        logger.debug(
            "Rejecting resume for %s: season/episode missing from progress", record.content_id
        )
        return None

    seconds = await compute_resume_seconds(record, runtime_lookup)
    if seconds <= 0:
        return None
    time_label = format_resume_time(seconds)
    if not time_label:
        return None

    if record.media_type == "movie":
        return ResumeTarget(label=time_label, position_seconds=seconds)
    return ResumeTarget(
        season=record.season,
        episode=record.episode,
        label=time_label,
        position_seconds=seconds,
    )


def build_play_target(
    media_type: MediaType,
    season_result: SeasonProgressResult | None,
    resume: ResumeTarget | None,
) -> PlayTarget | None:
    """Decide what a play action starts: resume point, next episode, or the pilot."""

    if resume is not None:
        return PlayTarget(
            season=resume.season, episode=resume.episode, label=resume.display_label()
        )
    if media_type == "movie" or season_result is None:
        return None
    next_unwatched = season_result.next_unwatched
    if not season_result.has_any_watched or next_unwatched is None:
        return PlayTarget(season=1, episode=1, label="Start E1-S1")
    season, episode = next_unwatched
    return PlayTarget(season=season, episode=episode, label=f"Continue S{season}-E{episode}")
