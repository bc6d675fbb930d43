"""Coordinates local history, remote watch history and metadata per profile."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..models import (
    ContinueWatchingEntry,
    MediaType,
    PlayTarget,
    ProgressRecord,
    ResumeTarget,
    SeasonProgressResult,
    WatchedEpisodeKey,
)
from .continue_watching import filter_remote_playback, resolve_continue_watching
from .profile_cache import (
    CONTINUE_WATCHING_QUERY,
    WATCHED_QUERY,
    ProfileCacheManager,
    resume_query,
)
from .resume import build_play_target, build_resume_target
from .season_progress import SeasonProgressAggregator
from .sources import ContentMetadata, LocalHistoryStore, RemoteWatchHistory
from .supersession import SupersessionGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

WatchedState = tuple[frozenset[WatchedEpisodeKey], frozenset[str]]


class WatchStateService:
    """Answers watched/resume/progress questions for profiles.

    All failures of the underlying sources degrade to "no data": the
    caller sees an empty list or ``None``, never an exception. The only
    error that escapes is a failed cache purge on profile switch.
    """

    def __init__(
        self,
        settings: Settings,
        local_store: LocalHistoryStore,
        remote: RemoteWatchHistory,
        metadata: ContentMetadata,
        *,
        cache: ProfileCacheManager | None = None,
    ):
        self._settings = settings
        self._local = local_store
        self._remote = remote
        self._metadata = metadata
        self._cache = cache or ProfileCacheManager(SupersessionGuard())
        self._aggregator = SeasonProgressAggregator(
            metadata, max_concurrency=settings.season_fetch_concurrency
        )

    @property
    def cache(self) -> ProfileCacheManager:
        return self._cache

    @property
    def guard(self) -> SupersessionGuard:
        return self._cache.guard

    # -- profile lifecycle -------------------------------------------------

    async def on_profile_switch(self, profile_id: str) -> None:
        """Activate ``profile_id`` after purging every cache of the previous one."""

        self._cache.on_profile_switch(profile_id)
        snapshot = self._cache.snapshot(profile_id)
        if snapshot is not None and snapshot.remote_records is not None:
            return
        try:
            records = await self._local.load_remote_snapshot(profile_id)
        except SQLAlchemyError as exc:
            logger.warning("Could not warm up caches for profile %s: %s", profile_id, exc)
            return
        self._cache.warm_up(profile_id, records)

    async def preload_profile(self, profile_id: str) -> None:
        """Stage a profile's last remote list so activating it shows data instantly."""

        try:
            records = await self._local.load_remote_snapshot(profile_id)
        except SQLAlchemyError as exc:
            logger.info("Preload for profile %s failed: %s", profile_id, exc)
            return
        self._cache.stage_preload(profile_id, records)

    def deactivate_profile(self) -> None:
        """Leave the active profile, dropping its caches and any staged preloads."""

        self._cache.deactivate()

    # -- watched state -----------------------------------------------------

    async def _with_timeout(self, awaitable: Awaitable[T], *, what: str) -> T | None:
        """Await a remote call, returning ``None`` on timeout or transport failure."""

        try:
            return await asyncio.wait_for(
                awaitable, timeout=self._settings.remote_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.info("Remote %s timed out after %.1fs", what, self._settings.remote_timeout_seconds)
        except Exception:
            logger.exception("Remote %s failed", what)
        return None

    async def _is_authenticated(self, profile_id: str) -> bool:
        try:
            return await self._remote.is_authenticated(profile_id)
        except Exception:
            logger.exception("Remote authentication check failed for %s", profile_id)
            return False

    @staticmethod
    def _loaded_watched(snapshot) -> WatchedState | None:
        if (
            snapshot is not None
            and snapshot.watched_episodes is not None
            and snapshot.watched_movies is not None
        ):
            return snapshot.watched_episodes, snapshot.watched_movies
        return None

    async def _watched_state(self, profile_id: str) -> WatchedState:
        cached = self._loaded_watched(self._cache.snapshot(profile_id))
        if cached is not None:
            return cached

        if not await self._is_authenticated(profile_id):
            return self._cache.overlay_watched(profile_id, (), ())

        ticket = self._cache.dispatch(WATCHED_QUERY, profile_id)
        fetched = await self._with_timeout(
            self._fetch_watched(profile_id), what="watched history"
        )
        if fetched is None:
            # Nothing is cached, so the next read retries the remote.
            return self._cache.overlay_watched(profile_id, (), ())
        episodes, movies = fetched
        self._cache.publish_watched(ticket, episodes, movies)
        cached = self._loaded_watched(self._cache.snapshot(profile_id))
        if cached is not None:
            return cached
        return self._cache.overlay_watched(profile_id, episodes, movies)

    async def _fetch_watched(self, profile_id: str) -> WatchedState | None:
        """Read both watched sets; ``None`` unless both reads succeeded."""

        results = await asyncio.gather(
            self._remote.get_watched_episode_keys(profile_id),
            self._remote.get_watched_movie_ids(profile_id),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Remote watched history failed for %s: %s", profile_id, result)
                return None
            if isinstance(result, BaseException):
                raise result
        episodes, movies = results
        if episodes is None or movies is None:
            logger.warning("Remote watched history unavailable for %s", profile_id)
            return None
        return frozenset(episodes), frozenset(movies)

    async def get_watched_episode_keys(self, profile_id: str) -> frozenset[WatchedEpisodeKey]:
        episodes, _ = await self._watched_state(profile_id)
        return episodes

    async def is_watched(self, profile_id: str, media_type: MediaType, content_id: str) -> bool:
        """Movies: in the watched set. Series: at least one episode watched."""

        episodes, movies = await self._watched_state(profile_id)
        if media_type == "movie":
            return content_id in movies
        return any(key.show_id == content_id for key in episodes)

    # -- season progress ---------------------------------------------------

    async def get_season_progress(self, profile_id: str, show_id: str) -> SeasonProgressResult:
        episodes = await self.get_watched_episode_keys(profile_id)
        try:
            return await self._aggregator.compute(show_id, episodes)
        except Exception:
            logger.exception("Season progress failed for show %s", show_id)
            return SeasonProgressResult.empty()

    # -- resume ------------------------------------------------------------

    async def get_resume_target(
        self, profile_id: str, media_type: MediaType, content_id: str
    ) -> ResumeTarget | None:
        """Resolve where playback continues, preferring local progress over remote."""

        key = (media_type, content_id)
        snapshot = self._cache.snapshot(profile_id)
        if snapshot is not None and key in snapshot.resume:
            return snapshot.resume[key]

        ticket = self._cache.dispatch(resume_query(media_type, content_id), profile_id)
        target = await self._resolve_resume(profile_id, media_type, content_id)
        self._cache.publish_resume(ticket, key, target)
        return target

    async def _resolve_resume(
        self, profile_id: str, media_type: MediaType, content_id: str
    ) -> ResumeTarget | None:
        try:
            local = await self._local.get_latest_progress(profile_id, content_id, media_type)
        except SQLAlchemyError as exc:
            logger.warning("Local progress lookup failed for %s: %s", content_id, exc)
            local = None
        if local is not None:
            target = await build_resume_target(local, self._runtime_lookup(local))
            if target is not None:
                return target

        remote = await self._remote_progress_for(profile_id, media_type, content_id)
        if remote is None:
            return None
        return await build_resume_target(remote, self._runtime_lookup(remote))

    async def _remote_progress_for(
        self, profile_id: str, media_type: MediaType, content_id: str
    ) -> ProgressRecord | None:
        snapshot = self._cache.snapshot(profile_id)
        if snapshot is not None and snapshot.remote_records is not None:
            candidates: list[ProgressRecord] = list(snapshot.remote_records)
        elif await self._is_authenticated(profile_id):
            candidates = (
                await self._with_timeout(
                    self._remote.get_continue_watching(profile_id), what="playback progress"
                )
                or []
            )
        else:
            candidates = []
        return next(
            (
                record
                for record in candidates
                if record.content_id == content_id
                and record.media_type == media_type
                and record.fraction_complete > 0
            ),
            None,
        )

    def _runtime_lookup(self, record: ProgressRecord):
        async def _lookup() -> int:
            return await self._metadata.get_runtime_minutes(
                record.content_id, record.media_type, record.season, record.episode
            )

        return _lookup

    async def get_play_target(
        self, profile_id: str, media_type: MediaType, content_id: str
    ) -> PlayTarget | None:
        if media_type == "movie":
            resume = await self.get_resume_target(profile_id, media_type, content_id)
            return build_play_target(media_type, None, resume)
        resume, progress = await asyncio.gather(
            self.get_resume_target(profile_id, media_type, content_id),
            self.get_season_progress(profile_id, content_id),
        )
        return build_play_target(media_type, progress, resume)

    # -- continue watching -------------------------------------------------

    def get_cached_continue_watching(self, profile_id: str) -> list[ContinueWatchingEntry]:
        """Return the last published (or warmed-up) list without fetching."""

        snapshot = self._cache.snapshot(profile_id)
        if snapshot is None:
            return []
        if snapshot.continue_watching is not None:
            return list(snapshot.continue_watching)
        if snapshot.remote_records:
            return resolve_continue_watching(
                (), snapshot.remote_records, (), limit=self._settings.max_continue_watching
            )
        return []

    async def get_continue_watching_list(self, profile_id: str) -> list[ContinueWatchingEntry]:
        """Merge fresh remote, cached remote and local history for ``profile_id``."""

        ticket = self._cache.dispatch(CONTINUE_WATCHING_QUERY, profile_id)
        fresh, local = await asyncio.gather(
            self._fresh_remote(profile_id),
            self._local_history(profile_id),
        )
        cached: list[ProgressRecord] = []
        if fresh:
            await self._store_snapshot(profile_id, fresh)
            self._cache.publish_remote_records(ticket, fresh)
        else:
            cached = await self._cached_remote(profile_id)

        entries = resolve_continue_watching(
            fresh, cached, local, limit=self._settings.max_continue_watching
        )
        self._cache.publish_continue_watching(ticket, entries)
        return entries

    async def _fresh_remote(self, profile_id: str) -> list[ProgressRecord]:
        if not await self._is_authenticated(profile_id):
            return []
        # Both branches handle their own timeouts and failures.
        playback, (episodes, movies) = await asyncio.gather(
            self._with_timeout(
                self._remote.get_continue_watching(profile_id), what="continue watching"
            ),
            self._watched_state(profile_id),
        )
        if not playback:
            return []
        return filter_remote_playback(
            playback,
            watched_episodes=episodes,
            watched_movies=movies,
            threshold_percent=self._settings.watched_threshold_percent,
        )

    async def _cached_remote(self, profile_id: str) -> list[ProgressRecord]:
        snapshot = self._cache.snapshot(profile_id)
        if snapshot is not None and snapshot.remote_records is not None:
            return list(snapshot.remote_records)
        try:
            return await self._local.load_remote_snapshot(profile_id)
        except SQLAlchemyError as exc:
            logger.warning("Cached remote list unavailable for %s: %s", profile_id, exc)
            return []

    async def _local_history(self, profile_id: str) -> list[ProgressRecord]:
        try:
            return await self._local.get_continue_watching(profile_id)
        except SQLAlchemyError as exc:
            logger.warning("Local history unavailable for %s: %s", profile_id, exc)
            return []

    async def _store_snapshot(self, profile_id: str, records: list[ProgressRecord]) -> None:
        try:
            await self._local.store_remote_snapshot(profile_id, records)
        except SQLAlchemyError as exc:
            logger.warning("Could not persist remote snapshot for %s: %s", profile_id, exc)

    # -- mutations ---------------------------------------------------------

    async def record_progress(self, profile_id: str, record: ProgressRecord) -> None:
        """Persist local playback progress and drop cached answers derived from it."""

        try:
            await self._local.save_progress(profile_id, record.with_origin("local"))
        except SQLAlchemyError as exc:
            logger.warning("Could not save progress for %s: %s", record.content_id, exc)
            return
        self._cache.invalidate_resume(profile_id, (record.media_type, record.content_id))
        self._cache.invalidate_continue_watching(profile_id)

    async def on_episode_toggled(
        self,
        profile_id: str,
        show_id: str,
        season: int,
        episode: int,
        watched: bool,
    ) -> None:
        """Mark an episode (un)watched remotely and update the cached set in place."""

        key = WatchedEpisodeKey(show_id, season, episode)
        self._cache.toggle_episode(profile_id, key, watched)
        self._cache.invalidate_resume(profile_id, ("series", show_id))

        if watched:
            try:
                await self._local.remove_from_history(profile_id, show_id, season, episode)
            except SQLAlchemyError as exc:
                logger.warning("Could not clear local history for %s: %s", key, exc)
            self._cache.invalidate_continue_watching(profile_id)

        if not await self._is_authenticated(profile_id):
            return
        if watched:
            call = self._remote.mark_episode_watched(profile_id, show_id, season, episode)
        else:
            call = self._remote.mark_episode_unwatched(profile_id, show_id, season, episode)
        synced = await self._with_timeout(call, what="episode toggle")
        if not synced:
            logger.warning("Remote history not updated for %s (watched=%s)", key, watched)

    async def on_movie_toggled(self, profile_id: str, movie_id: str, watched: bool) -> None:
        self._cache.toggle_movie(profile_id, movie_id, watched)
        self._cache.invalidate_resume(profile_id, ("movie", movie_id))

        if watched:
            try:
                await self._local.remove_from_history(profile_id, movie_id)
            except SQLAlchemyError as exc:
                logger.warning("Could not clear local history for movie %s: %s", movie_id, exc)
            self._cache.invalidate_continue_watching(profile_id)

        if not await self._is_authenticated(profile_id):
            return
        if watched:
            call = self._remote.mark_movie_watched(profile_id, movie_id)
        else:
            call = self._remote.mark_movie_unwatched(profile_id, movie_id)
        synced = await self._with_timeout(call, what="movie toggle")
        if not synced:
            logger.warning("Remote history not updated for movie %s (watched=%s)", movie_id, watched)
