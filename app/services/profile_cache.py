"""Profile-scoped watch-state caches and their lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Hashable, Iterable, Mapping, TypeVar

from ..models import ContinueWatchingEntry, ProgressRecord, ResumeTarget, WatchedEpisodeKey
from .supersession import FetchTicket, SupersessionGuard

logger = logging.getLogger(__name__)

WATCHED_QUERY = "watched"
CONTINUE_WATCHING_QUERY = "continue-watching"

ResumeKey = tuple[str, str]
K = TypeVar("K", bound=Hashable)


class ProfileSwitchError(RuntimeError):
    """Raised when the previous profile's caches could not be cleared."""


def resume_query(media_type: str, content_id: str) -> str:
    return f"resume:{media_type}:{content_id}"


def _apply_toggles(base: Iterable[K], toggles: Mapping[K, bool]) -> frozenset[K]:
    result = set(base)
    for key, watched in toggles.items():
        if watched:
            result.add(key)
        else:
            result.discard(key)
    return frozenset(result)


@dataclass(frozen=True, slots=True)
class ProfileSnapshot:
    """Immutable view of everything cached for the active profile.

    ``None`` means "not loaded yet". Warm-up data is flagged provisional and
    is replaced wholesale by the first authoritative remote list. Toggles
    made before the watched sets load are kept in ``pending_*`` and applied
    on top of whatever the remote fetch returns.
    """

    profile_id: str
    watched_episodes: frozenset[WatchedEpisodeKey] | None = None
    watched_movies: frozenset[str] | None = None
    remote_records: tuple[ProgressRecord, ...] | None = None
    remote_records_provisional: bool = False
    continue_watching: tuple[ContinueWatchingEntry, ...] | None = None
    resume: Mapping[ResumeKey, ResumeTarget | None] = field(
        default_factory=lambda: MappingProxyType({})
    )
    pending_episodes: Mapping[WatchedEpisodeKey, bool] = field(
        default_factory=lambda: MappingProxyType({})
    )
    pending_movies: Mapping[str, bool] = field(
        default_factory=lambda: MappingProxyType({})
    )


class ProfileCacheManager:
    """Sole owner of profile-scoped caches.

    Readers receive immutable snapshots; writers build a new snapshot and
    swap it in with a single assignment, so reads never observe a partial
    update. Every write is gated by a supersession ticket whose subject is
    the profile id the fetch was dispatched for.
    """

    def __init__(self, guard: SupersessionGuard):
        self._guard = guard
        self._active_profile: str | None = None
        self._snapshot: ProfileSnapshot | None = None
        self._preloaded: dict[str, tuple[ProgressRecord, ...]] = {}
        self._clear_hooks: list[Callable[[], None]] = []

    @property
    def active_profile_id(self) -> str | None:
        return self._active_profile

    @property
    def guard(self) -> SupersessionGuard:
        return self._guard

    def snapshot(self, profile_id: str) -> ProfileSnapshot | None:
        """Return the cached snapshot for ``profile_id`` if it is the active profile."""

        snapshot = self._snapshot
        if snapshot is None or snapshot.profile_id != profile_id:
            return None
        return snapshot

    def is_active(self, profile_id: str) -> bool:
        return self._active_profile is not None and self._active_profile == profile_id

    def register_clear_hook(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` whenever profile caches are purged."""

        self._clear_hooks.append(hook)

    def on_profile_switch(self, new_profile_id: str) -> None:
        """Purge the previous profile's state, then activate ``new_profile_id``.

        Runs synchronously so no await point can interleave a read between the
        two profiles. A failed purge is retried once; if it fails again the
        switch is aborted with :class:`ProfileSwitchError`.
        """

        previous = self._active_profile
        for attempt in (1, 2):
            try:
                self._clear()
                break
            except Exception as exc:
                if attempt == 2:
                    raise ProfileSwitchError(
                        f"Could not clear caches for profile {previous!r}"
                    ) from exc
                logger.warning(
                    "Clearing caches for profile %s failed, retrying: %s", previous, exc
                )

        staged = self._preloaded.pop(new_profile_id, None)
        self._preloaded.clear()
        self._active_profile = new_profile_id
        self._snapshot = ProfileSnapshot(profile_id=new_profile_id)
        logger.info("Active profile switched from %s to %s", previous, new_profile_id)
        if staged:
            self.warm_up(new_profile_id, staged)

    def deactivate(self) -> None:
        """Leave the current profile without selecting another one."""

        self._clear()
        self._preloaded.clear()
        self._active_profile = None

    def _clear(self) -> None:
        self._guard.invalidate()
        self._snapshot = None
        for hook in self._clear_hooks:
            hook()

    def stage_preload(self, profile_id: str, records: Iterable[ProgressRecord]) -> None:
        """Keep a preloaded remote list until ``profile_id`` is activated."""

        staged = tuple(records)
        if staged:
            self._preloaded[profile_id] = staged

    def warm_up(self, profile_id: str, records: Iterable[ProgressRecord]) -> bool:
        """Seed the remote list with provisional data for the active profile."""

        snapshot = self.snapshot(profile_id)
        if snapshot is None:
            return False
        if snapshot.remote_records is not None and not snapshot.remote_records_provisional:
            return False
        seeded = tuple(record.with_origin("remote_cached") for record in records)
        if not seeded:
            return False
        self._snapshot = replace(
            snapshot, remote_records=seeded, remote_records_provisional=True
        )
        return True

    def dispatch(self, query_class: str, profile_id: str) -> FetchTicket | None:
        """Open a ticket for a cache-populating fetch, or ``None`` for inactive profiles."""

        if not self.is_active(profile_id):
            return None
        return self._guard.dispatch(query_class, profile_id)

    def _writable(self, ticket: FetchTicket | None) -> ProfileSnapshot | None:
        if ticket is None or not self._guard.complete(ticket):
            return None
        snapshot = self._snapshot
        if snapshot is None or snapshot.profile_id != ticket.subject:
            return None
        return snapshot

    def publish_watched(
        self,
        ticket: FetchTicket | None,
        episodes: Iterable[WatchedEpisodeKey],
        movies: Iterable[str],
    ) -> bool:
        """Store a successfully fetched watched set, folding in pending toggles."""

        snapshot = self._writable(ticket)
        if snapshot is None:
            return False
        self._snapshot = replace(
            snapshot,
            watched_episodes=_apply_toggles(episodes, snapshot.pending_episodes),
            watched_movies=_apply_toggles(movies, snapshot.pending_movies),
            pending_episodes=MappingProxyType({}),
            pending_movies=MappingProxyType({}),
        )
        return True

    def publish_remote_records(
        self, ticket: FetchTicket | None, records: Iterable[ProgressRecord]
    ) -> bool:
        """Store an authoritative remote list, displacing any warm-up data."""

        snapshot = self._writable(ticket)
        if snapshot is None:
            return False
        self._snapshot = replace(
            snapshot,
            remote_records=tuple(record.with_origin("remote_cached") for record in records),
            remote_records_provisional=False,
        )
        return True

    def publish_continue_watching(
        self, ticket: FetchTicket | None, entries: Iterable[ContinueWatchingEntry]
    ) -> bool:
        snapshot = self._writable(ticket)
        if snapshot is None:
            return False
        self._snapshot = replace(snapshot, continue_watching=tuple(entries))
        return True

    def publish_resume(
        self,
        ticket: FetchTicket | None,
        key: ResumeKey,
        target: ResumeTarget | None,
    ) -> bool:
        snapshot = self._writable(ticket)
        if snapshot is None:
            return False
        resume = dict(snapshot.resume)
        resume[key] = target
        self._snapshot = replace(snapshot, resume=MappingProxyType(resume))
        return True

    def invalidate_resume(self, profile_id: str, key: ResumeKey) -> None:
        snapshot = self.snapshot(profile_id)
        if snapshot is None:
            return
        media_type, content_id = key
        self._guard.invalidate(resume_query(media_type, content_id))
        if key not in snapshot.resume:
            return
        resume = {k: v for k, v in snapshot.resume.items() if k != key}
        self._snapshot = replace(snapshot, resume=MappingProxyType(resume))

    def invalidate_continue_watching(self, profile_id: str) -> None:
        snapshot = self.snapshot(profile_id)
        if snapshot is None or snapshot.continue_watching is None:
            return
        self._snapshot = replace(snapshot, continue_watching=None)

    def toggle_episode(
        self, profile_id: str, key: WatchedEpisodeKey, watched: bool
    ) -> None:
        """Apply a local watched toggle without refetching the watched set."""

        snapshot = self.snapshot(profile_id)
        if snapshot is None:
            return
        if snapshot.watched_episodes is None:
            pending = dict(snapshot.pending_episodes)
            pending[key] = watched
            self._snapshot = replace(snapshot, pending_episodes=MappingProxyType(pending))
            return
        self._snapshot = replace(
            snapshot,
            watched_episodes=_apply_toggles(snapshot.watched_episodes, {key: watched}),
        )

    def toggle_movie(self, profile_id: str, movie_id: str, watched: bool) -> None:
        snapshot = self.snapshot(profile_id)
        if snapshot is None:
            return
        if snapshot.watched_movies is None:
            pending = dict(snapshot.pending_movies)
            pending[movie_id] = watched
            self._snapshot = replace(snapshot, pending_movies=MappingProxyType(pending))
            return
        self._snapshot = replace(
            snapshot,
            watched_movies=_apply_toggles(snapshot.watched_movies, {movie_id: watched}),
        )

    def overlay_watched(
        self,
        profile_id: str,
        episodes: Iterable[WatchedEpisodeKey],
        movies: Iterable[str],
    ) -> tuple[frozenset[WatchedEpisodeKey], frozenset[str]]:
        """Return uncached watched sets with the profile's pending toggles applied."""

        snapshot = self.snapshot(profile_id)
        if snapshot is None:
            return frozenset(episodes), frozenset(movies)
        return (
            _apply_toggles(episodes, snapshot.pending_episodes),
            _apply_toggles(movies, snapshot.pending_movies),
        )
