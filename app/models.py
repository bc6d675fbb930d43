"""Pydantic models describing watch-state payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import clamp_percent, continue_watching_key

MediaType = Literal["movie", "series"]
SourceOrigin = Literal["local", "remote_fresh", "remote_cached"]


@dataclass(frozen=True, slots=True)
class WatchedEpisodeKey:
    """Canonical ``show:season:episode`` identity of a watched episode."""

    show_id: str
    season: int
    episode: int

    def __str__(self) -> str:
        return f"{self.show_id}:{self.season}:{self.episode}"

    @classmethod
    def parse(cls, raw: str) -> "WatchedEpisodeKey":
        """Parse a serialised key, allowing ``:`` inside the show id."""

        show_id, _, rest = str(raw).rpartition(":")
        show_id, _, season = show_id.rpartition(":")
        if not show_id:
            raise ValueError(f"Malformed watched-episode key: {raw!r}")
        try:
            return cls(show_id=show_id, season=int(season), episode=int(rest))
        except ValueError as exc:
            raise ValueError(f"Malformed watched-episode key: {raw!r}") from exc


class ProgressRecord(BaseModel):
    """A single progress observation for a movie or an episode."""

    model_config = ConfigDict(frozen=True)

    content_id: str
    media_type: MediaType
    season: int | None = None
    episode: int | None = None
    fraction_complete: float = Field(default=0.0, ge=0.0, le=1.0)
    position_seconds: int | None = Field(default=None, ge=0)
    duration_seconds: int | None = Field(default=None, ge=0)
    title: str | None = None
    episode_title: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    source_origin: SourceOrigin = "local"
    updated_at: datetime | None = None

    @field_validator("content_id", mode="before")
    @classmethod
    def _coerce_content_id(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("fraction_complete", mode="before")
    @classmethod
    def _clamp_fraction(cls, value: object) -> object:
        """Clamp slightly out-of-range fractions reported by upstream sources."""

        if value is None:
            return 0.0
        if isinstance(value, (int, float)):
            return min(max(float(value), 0.0), 1.0)
        return value

    def dedupe_key(self) -> str:
        return continue_watching_key(
            self.media_type, self.content_id, self.season, self.episode
        )

    def with_origin(self, origin: SourceOrigin) -> "ProgressRecord":
        return self.model_copy(update={"source_origin": origin})


class SeasonProgress(BaseModel):
    """Watched and total episode counts for one season."""

    model_config = ConfigDict(frozen=True)

    season_number: int
    watched_count: int = Field(ge=0)
    total_count: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "SeasonProgress":
        if self.watched_count > self.total_count:
            raise ValueError("watched_count cannot exceed total_count")
        return self


class SeasonProgressResult(BaseModel):
    """Per-season progress for a show plus the first unwatched episode."""

    model_config = ConfigDict(frozen=True)

    season_progress: dict[int, SeasonProgress] = Field(default_factory=dict)
    has_any_watched: bool = False
    next_unwatched: tuple[int, int] | None = None

    @classmethod
    def empty(cls) -> "SeasonProgressResult":
        return cls()


class ResumeTarget(BaseModel):
    """Where playback should continue for a movie or a series."""

    model_config = ConfigDict(frozen=True)

    season: int | None = None
    episode: int | None = None
    label: str
    position_seconds: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_episode_pair(self) -> "ResumeTarget":
        if (self.season is None) != (self.episode is None):
            raise ValueError("season and episode must be provided together")
        if not self.label.strip():
            raise ValueError("label must not be empty")
        return self

    def display_label(self) -> str:
        """Return the button copy, e.g. ``Resume 45:00 E3 - S2``."""

        if self.season is None:
            return f"Resume {self.label}"
        return f"Resume {self.label} E{self.episode} - S{self.season}"


class PlayTarget(BaseModel):
    """The episode (or movie) a play action should start."""

    model_config = ConfigDict(frozen=True)

    season: int | None = None
    episode: int | None = None
    label: str


class ContinueWatchingEntry(BaseModel):
    """Display-ready summary of in-progress content."""

    model_config = ConfigDict(frozen=True)

    content_id: str
    media_type: MediaType
    title: str
    season: int | None = None
    episode: int | None = None
    episode_title: str | None = None
    progress_percent: int = Field(ge=0, le=100)
    poster_path: str | None = None
    backdrop_path: str | None = None

    @classmethod
    def from_record(cls, record: ProgressRecord) -> "ContinueWatchingEntry | None":
        """Map a progress record, returning ``None`` when it cannot be displayed."""

        title = (record.title or "").strip()
        if not title:
            return None
        is_series = record.media_type == "series"
        return cls(
            content_id=record.content_id,
            media_type=record.media_type,
            title=title,
            season=record.season if is_series else None,
            episode=record.episode if is_series else None,
            episode_title=record.episode_title if is_series else None,
            progress_percent=clamp_percent(record.fraction_complete),
            poster_path=record.poster_path,
            backdrop_path=record.backdrop_path,
        )

    def subtitle(self) -> str:
        if self.media_type == "series" and self.season is not None and self.episode is not None:
            base = f"S{self.season}:E{self.episode}"
            return f"{base}  {self.episode_title}" if self.episode_title else base
        return "Movie" if self.media_type == "movie" else "TV Series"
