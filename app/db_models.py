"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class Profile(Base):
    """A user identity sharing the installation, with its Trakt credentials."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    trakt_access_token: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    history: Mapped[list["WatchHistoryRecord"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )


class WatchHistoryRecord(Base):
    """Device-local playback progress for a movie or an episode.

    Season and episode use ``-1`` for movies so the unique constraint also
    covers them.
    """

    __tablename__ = "watch_history"
    __table_args__ = (
        UniqueConstraint(
            "profile_id",
            "media_type",
            "content_id",
            "season",
            "episode",
            name="uq_watch_history_content",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), index=True
    )
    media_type: Mapped[str] = mapped_column(String(16))
    content_id: Mapped[str] = mapped_column(String(64))
    season: Mapped[int] = mapped_column(Integer, default=-1)
    episode: Mapped[int] = mapped_column(Integer, default=-1)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    position_seconds: Mapped[int] = mapped_column(BigInteger, default=0)
    duration_seconds: Mapped[int] = mapped_column(BigInteger, default=0)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    episode_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    poster_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    backdrop_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True
    )

    profile: Mapped[Profile] = relationship(back_populates="history")


class ContinueWatchingSnapshot(Base):
    """Last known-good remote continue-watching list for a profile."""

    __tablename__ = "continue_watching_snapshots"

    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    payload: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    refreshed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
