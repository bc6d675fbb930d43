"""Incremental watch-state loading for the title currently being viewed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from ..models import MediaType, PlayTarget, ResumeTarget, SeasonProgressResult
from .resume import build_play_target
from .supersession import FetchTicket, SupersessionGuard
from .watch_state import WatchStateService

logger = logging.getLogger(__name__)

DETAILS_QUERY = "details"


@dataclass(frozen=True, slots=True)
class DetailsState:
    profile_id: str
    media_type: MediaType
    content_id: str
    season_progress: SeasonProgressResult | None = None
    resume: ResumeTarget | None = None
    play_target: PlayTarget | None = None
    is_watched: bool = False
    loading: bool = True

    @property
    def subject(self) -> tuple[str, str, str]:
        return (self.profile_id, self.media_type, self.content_id)

    def to_payload(self) -> dict[str, Any]:
        progress = self.season_progress
        return {
            "profileId": self.profile_id,
            "mediaType": self.media_type,
            "contentId": self.content_id,
            "isWatched": self.is_watched,
            "loading": self.loading,
            "resume": self.resume.model_dump() if self.resume else None,
            "playTarget": self.play_target.model_dump() if self.play_target else None,
            "seasonProgress": progress.model_dump(mode="json") if progress else None,
        }


class DetailsLoader:
    """Loads resume, season progress and play target for one title at a time.

    Opening a new title supersedes the previous load. Partial results are
    published as soon as each piece arrives, but only while the load is
    still the current one, so a slow response for an older title never
    overwrites the state of the title on screen.
    """

    def __init__(
        self,
        service: WatchStateService,
        *,
        on_update: Callable[[DetailsState], None] | None = None,
    ):
        self._service = service
        self._guard: SupersessionGuard = service.guard
        self._on_update = on_update
        self._state: DetailsState | None = None

    @property
    def state(self) -> DetailsState | None:
        return self._state

    def _set(self, state: DetailsState) -> None:
        self._state = state
        if self._on_update is not None:
            self._on_update(state)

    def _update(self, ticket: FetchTicket, **changes: Any) -> None:
        if not self._guard.still_current(ticket):
            return
        state = self._state
        if state is None or state.subject != ticket.subject:
            return
        self._set(replace(state, **changes))

    async def load(
        self, profile_id: str, media_type: MediaType, content_id: str
    ) -> DetailsState | None:
        """Load state for a title; returns ``None`` if a newer load replaced it."""

        ticket = self._guard.dispatch(DETAILS_QUERY, (profile_id, media_type, content_id))
        self._set(
            DetailsState(profile_id=profile_id, media_type=media_type, content_id=content_id)
        )

        async def _season_progress() -> SeasonProgressResult | None:
            if media_type != "series":
                return None
            result = await self._service.get_season_progress(profile_id, content_id)
            self._update(ticket, season_progress=result)
            return result

        async def _resume() -> ResumeTarget | None:
            target = await self._service.get_resume_target(profile_id, media_type, content_id)
            self._update(ticket, resume=target)
            return target

        async def _watched() -> bool:
            watched = await self._service.is_watched(profile_id, media_type, content_id)
            self._update(ticket, is_watched=watched)
            return watched

        progress, resume, watched = await asyncio.gather(
            _season_progress(), _resume(), _watched()
        )
        if not self._guard.complete(ticket):
            logger.debug("Details load for %s %s superseded", media_type, content_id)
            return None

        final = DetailsState(
            profile_id=profile_id,
            media_type=media_type,
            content_id=content_id,
            season_progress=progress,
            resume=resume,
            play_target=build_play_target(media_type, progress, resume),
            is_watched=watched,
            loading=False,
        )
        self._set(final)
        return final

    async def refresh(self) -> DetailsState | None:
        """Reload the title currently shown, e.g. after a watched toggle."""

        state = self._state
        if state is None:
            return None
        return await self.load(state.profile_id, state.media_type, state.content_id)

    def reset(self) -> None:
        self._guard.invalidate(DETAILS_QUERY)
        self._state = None
