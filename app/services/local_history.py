"""Device-local progress store backed by SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ContinueWatchingSnapshot, Profile, WatchHistoryRecord
from ..models import MediaType, ProgressRecord
from ..utils import MOVIE_SENTINEL

logger = logging.getLogger(__name__)


class SQLLocalHistoryStore:
    """Local history and remote-snapshot persistence for every profile."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_entries: int = 50,
    ):
        self._session_factory = session_factory
        self._max_entries = max_entries

    async def get_continue_watching(self, profile_id: str) -> list[ProgressRecord]:
        """Return unfinished local progress, most recently updated first."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(WatchHistoryRecord)
                .where(
                    WatchHistoryRecord.profile_id == profile_id,
                    WatchHistoryRecord.progress > 0,
                    WatchHistoryRecord.progress < 1,
                )
                .order_by(WatchHistoryRecord.updated_at.desc(), WatchHistoryRecord.id.desc())
                .limit(self._max_entries)
            )
            rows = result.scalars().all()
        return [self._row_to_record(row) for row in rows]

    async def get_latest_progress(
        self,
        profile_id: str,
        content_id: str,
        media_type: MediaType | None = None,
    ) -> ProgressRecord | None:
        statement = select(WatchHistoryRecord).where(
            WatchHistoryRecord.profile_id == profile_id,
            WatchHistoryRecord.content_id == str(content_id),
        )
        if media_type is not None:
            statement = statement.where(WatchHistoryRecord.media_type == media_type)
        statement = statement.order_by(
            WatchHistoryRecord.updated_at.desc(), WatchHistoryRecord.id.desc()
        ).limit(1)
        async with self._session_factory() as session:
            row = (await session.execute(statement)).scalars().first()
        return self._row_to_record(row) if row is not None else None

    async def remove_from_history(
        self,
        profile_id: str,
        content_id: str,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        statement = delete(WatchHistoryRecord).where(
            WatchHistoryRecord.profile_id == profile_id,
            WatchHistoryRecord.content_id == str(content_id),
        )
        if season is not None:
            statement = statement.where(WatchHistoryRecord.season == season)
        if episode is not None:
            statement = statement.where(WatchHistoryRecord.episode == episode)
        async with self._session_factory() as session:
            await session.execute(statement)
            await session.commit()

    async def save_progress(self, profile_id: str, record: ProgressRecord) -> None:
        season = MOVIE_SENTINEL if record.media_type == "movie" or record.season is None else record.season
        episode = MOVIE_SENTINEL if record.media_type == "movie" or record.episode is None else record.episode
        async with self._session_factory() as session:
            await self._ensure_profile(session, profile_id)
            row = (
                await session.execute(
                    select(WatchHistoryRecord).where(
                        WatchHistoryRecord.profile_id == profile_id,
                        WatchHistoryRecord.media_type == record.media_type,
                        WatchHistoryRecord.content_id == record.content_id,
                        WatchHistoryRecord.season == season,
                        WatchHistoryRecord.episode == episode,
                    )
                )
            ).scalars().first()
            if row is None:
                row = WatchHistoryRecord(
                    profile_id=profile_id,
                    media_type=record.media_type,
                    content_id=record.content_id,
                    season=season,
                    episode=episode,
                )
                session.add(row)
            row.progress = record.fraction_complete
            row.position_seconds = record.position_seconds or 0
            row.duration_seconds = record.duration_seconds or 0
            row.title = record.title or row.title
            row.episode_title = record.episode_title or row.episode_title
            row.poster_path = record.poster_path or row.poster_path
            row.backdrop_path = record.backdrop_path or row.backdrop_path
            row.updated_at = record.updated_at or datetime.utcnow()
            await session.commit()

    async def load_remote_snapshot(self, profile_id: str) -> list[ProgressRecord]:
        async with self._session_factory() as session:
            snapshot = await session.get(ContinueWatchingSnapshot, profile_id)
        if snapshot is None or not isinstance(snapshot.payload, list):
            return []
        records: list[ProgressRecord] = []
        for entry in snapshot.payload:
            if not isinstance(entry, dict):
                continue
            try:
                record = ProgressRecord.model_validate(entry)
            except ValueError:
                logger.debug("Skipping malformed snapshot entry for %s", profile_id)
                continue
            records.append(record.with_origin("remote_cached"))
        return records

    async def store_remote_snapshot(
        self, profile_id: str, records: Iterable[ProgressRecord]
    ) -> None:
        payload = [
            record.model_dump(mode="json")
            for record in list(records)[: self._max_entries]
        ]
        async with self._session_factory() as session:
            await self._ensure_profile(session, profile_id)
            snapshot = await session.get(ContinueWatchingSnapshot, profile_id)
            if snapshot is None:
                session.add(ContinueWatchingSnapshot(profile_id=profile_id, payload=payload))
            else:
                snapshot.payload = payload
                snapshot.refreshed_at = datetime.utcnow()
            await session.commit()

    async def get_trakt_token(self, profile_id: str) -> str | None:
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
        return profile.trakt_access_token if profile is not None else None

    async def upsert_profile(
        self,
        profile_id: str,
        *,
        display_name: str | None = None,
        trakt_access_token: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            profile = await self._ensure_profile(session, profile_id)
            if display_name is not None:
                profile.display_name = display_name
            if trakt_access_token is not None:
                profile.trakt_access_token = trakt_access_token or None
            await session.commit()

    @staticmethod
    async def _ensure_profile(session: AsyncSession, profile_id: str) -> Profile:
        profile = await session.get(Profile, profile_id)
        if profile is None:
            profile = Profile(id=profile_id)
            session.add(profile)
            await session.flush()
        return profile

    @staticmethod
    def _row_to_record(row: WatchHistoryRecord) -> ProgressRecord:
        is_movie = row.media_type == "movie"
        return ProgressRecord(
            content_id=row.content_id,
            media_type="movie" if is_movie else "series",
            season=None if is_movie or row.season < 0 else row.season,
            episode=None if is_movie or row.episode < 0 else row.episode,
            fraction_complete=row.progress or 0.0,
            position_seconds=row.position_seconds or None,
            duration_seconds=row.duration_seconds or None,
            title=row.title,
            episode_title=row.episode_title,
            poster_path=row.poster_path,
            backdrop_path=row.backdrop_path,
            source_origin="local",
            updated_at=row.updated_at,
        )
