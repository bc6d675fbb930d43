"""Continue-watching list resolution across remote, cached and local sources."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..models import ContinueWatchingEntry, ProgressRecord, SourceOrigin, WatchedEpisodeKey

logger = logging.getLogger(__name__)


def dedupe_records(records: Iterable[ProgressRecord]) -> list[ProgressRecord]:
    """Drop repeated composite keys, keeping the first (most recent) occurrence."""

    seen: set[str] = set()
    unique: list[ProgressRecord] = []
    for record in records:
        key = record.dedupe_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def select_source(
    fresh_remote: Sequence[ProgressRecord],
    cached_remote: Sequence[ProgressRecord],
    local_history: Sequence[ProgressRecord],
) -> tuple[SourceOrigin | None, Sequence[ProgressRecord]]:
    """Return the first non-empty source in precedence order."""

    for origin, records in (
        ("remote_fresh", fresh_remote),
        ("remote_cached", cached_remote),
        ("local", local_history),
    ):
        if records:
            return origin, records
    return None, ()


def resolve_continue_watching(
    fresh_remote: Sequence[ProgressRecord],
    cached_remote: Sequence[ProgressRecord],
    local_history: Sequence[ProgressRecord],
    *,
    limit: int | None = None,
) -> list[ContinueWatchingEntry]:
    """Merge the three candidate lists into one display list.

    Sources are never blended: fresh remote wins over cached remote which
    wins over local history, whenever the preferred list is non-empty.
    """

    origin, chosen = select_source(fresh_remote, cached_remote, local_history)
    if origin is None:
        return []

    entries: list[ContinueWatchingEntry] = []
    for record in dedupe_records(chosen):
        entry = ContinueWatchingEntry.from_record(record)
        if entry is None:
            logger.info("Dropping untitled continue-watching record %s", record.content_id)
            continue
        entries.append(entry)
        if limit is not None and len(entries) >= limit:
            break
    logger.debug("Continue watching resolved from %s with %d entries", origin, len(entries))
    return entries


def filter_remote_playback(
    records: Iterable[ProgressRecord],
    *,
    watched_episodes: frozenset[WatchedEpisodeKey] | set[WatchedEpisodeKey],
    watched_movies: frozenset[str] | set[str],
    threshold_percent: int,
) -> list[ProgressRecord]:
    """Remove playback entries that are effectively finished or already watched."""

    threshold = threshold_percent / 100
    kept: list[ProgressRecord] = []
    for record in records:
        if record.fraction_complete > threshold:
            continue
        if record.media_type == "movie":
            if record.content_id in watched_movies:
                continue
        elif record.season is not None and record.episode is not None:
            key = WatchedEpisodeKey(record.content_id, record.season, record.episode)
            if key in watched_episodes:
                continue
        kept.append(record)
    return kept
