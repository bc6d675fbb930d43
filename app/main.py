"""Entry point for the FastAPI-powered watch-state service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .models import ContinueWatchingEntry, MediaType, ProgressRecord
from .services.details import DetailsLoader
from .services.local_history import SQLLocalHistoryStore
from .services.profile_cache import ProfileSwitchError
from .services.sources import ContentMetadata, UnconfiguredMetadata
from .services.tmdb import TMDBClient
from .services.trakt import TraktClient
from .services.watch_state import WatchStateService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class WatchedToggle(BaseModel):
    watched: bool


class ProgressUpdate(ProgressRecord):
    """Progress posted by a player; a title is needed to list it in continue watching."""

    title: str = Field(min_length=1)


class ProfileUpdate(BaseModel):
    display_name: str | None = Field(default=None, alias="displayName")
    trakt_access_token: str | None = Field(default=None, alias="traktAccessToken")


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    trakt_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.trakt_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    local_store = SQLLocalHistoryStore(
        database.session_factory, max_entries=settings.max_progress_entries
    )
    trakt = TraktClient(
        settings, trakt_http_client, token_provider=local_store.get_trakt_token
    )
    metadata: ContentMetadata
    if settings.tmdb_api_key:
        metadata = TMDBClient(settings, tmdb_http_client)
    else:
        logger.warning("TMDB_API_KEY is not set; season progress and runtimes are unavailable")
        metadata = UnconfiguredMetadata()

    service = WatchStateService(settings, local_store, trakt, metadata)
    details_loader = DetailsLoader(service)
    service.cache.register_clear_hook(details_loader.reset)

    app.state.watch_state_service = service
    app.state.details_loader = details_loader
    app.state.local_store = local_store
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Watched state, resume points and continue watching across profiles",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_watch_state_service(app: FastAPI) -> WatchStateService:
    service = getattr(app.state, "watch_state_service", None)
    if not isinstance(service, WatchStateService):
        raise RuntimeError("Watch state service not initialised")
    return service


def get_details_loader(app: FastAPI) -> DetailsLoader:
    loader = getattr(app.state, "details_loader", None)
    if not isinstance(loader, DetailsLoader):
        raise RuntimeError("Details loader not initialised")
    return loader


def _entry_payload(entry: ContinueWatchingEntry) -> dict[str, Any]:
    payload = entry.model_dump()
    payload["subtitle"] = entry.subtitle()
    return payload


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.put("/profiles/{profile_id}")
    async def update_profile(profile_id: str, payload: ProfileUpdate) -> dict[str, str]:
        store = getattr(fastapi_app.state, "local_store", None)
        if not isinstance(store, SQLLocalHistoryStore):
            raise HTTPException(status_code=503, detail="Profile storage unavailable")
        await store.upsert_profile(
            profile_id,
            display_name=payload.display_name,
            trakt_access_token=payload.trakt_access_token,
        )
        return {"status": "ok", "profileId": profile_id}

    @fastapi_app.post("/profiles/{profile_id}/activate")
    async def activate_profile(profile_id: str) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        try:
            await service.on_profile_switch(profile_id)
        except ProfileSwitchError as exc:
            logger.error("Profile switch to %s aborted: %s", profile_id, exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {
            "activeProfileId": service.cache.active_profile_id,
            "continueWatching": [
                _entry_payload(entry) for entry in service.get_cached_continue_watching(profile_id)
            ],
        }

    @fastapi_app.post("/profiles/deactivate")
    async def deactivate_profile() -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        service.deactivate_profile()
        return {"activeProfileId": None}

    @fastapi_app.post("/profiles/{profile_id}/preload")
    async def preload_profile(profile_id: str) -> dict[str, str]:
        service = get_watch_state_service(fastapi_app)
        await service.preload_profile(profile_id)
        return {"status": "ok", "profileId": profile_id}

    @fastapi_app.get("/profiles/{profile_id}/resume/{media_type}/{content_id}")
    async def resume_target(
        profile_id: str, media_type: MediaType, content_id: str
    ) -> JSONResponse:
        service = get_watch_state_service(fastapi_app)
        target = await service.get_resume_target(profile_id, media_type, content_id)
        if target is None:
            return JSONResponse({"resume": None})
        payload = target.model_dump()
        payload["displayLabel"] = target.display_label()
        return JSONResponse({"resume": payload})

    @fastapi_app.get("/profiles/{profile_id}/play/{media_type}/{content_id}")
    async def play_target(
        profile_id: str, media_type: MediaType, content_id: str
    ) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        target = await service.get_play_target(profile_id, media_type, content_id)
        return {"playTarget": target.model_dump() if target else None}

    @fastapi_app.get("/profiles/{profile_id}/watched/{media_type}/{content_id}")
    async def watched_status(
        profile_id: str, media_type: MediaType, content_id: str
    ) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        watched = await service.is_watched(profile_id, media_type, content_id)
        return {"contentId": content_id, "mediaType": media_type, "watched": watched}

    @fastapi_app.get("/profiles/{profile_id}/shows/{show_id}/progress")
    async def season_progress(profile_id: str, show_id: str) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        result = await service.get_season_progress(profile_id, show_id)
        return result.model_dump(mode="json")

    @fastapi_app.get("/profiles/{profile_id}/details/{media_type}/{content_id}")
    async def details(profile_id: str, media_type: MediaType, content_id: str) -> dict[str, Any]:
        loader = get_details_loader(fastapi_app)
        state = await loader.load(profile_id, media_type, content_id)
        if state is None:
            raise HTTPException(status_code=409, detail="Superseded by a newer details request")
        return state.to_payload()

    @fastapi_app.get("/profiles/{profile_id}/continue-watching")
    async def continue_watching(profile_id: str) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        entries = await service.get_continue_watching_list(profile_id)
        return {"items": [_entry_payload(entry) for entry in entries]}

    @fastapi_app.post("/profiles/{profile_id}/progress", status_code=204)
    async def record_progress(profile_id: str, record: ProgressUpdate) -> None:
        service = get_watch_state_service(fastapi_app)
        await service.record_progress(profile_id, record)

    @fastapi_app.put(
        "/profiles/{profile_id}/shows/{show_id}/episodes/{season}/{episode}/watched"
    )
    async def toggle_episode(
        profile_id: str, show_id: str, season: int, episode: int, payload: WatchedToggle
    ) -> dict[str, Any]:
        if season < 0 or episode < 0:
            raise HTTPException(status_code=400, detail="Season and episode must be non-negative")
        service = get_watch_state_service(fastapi_app)
        await service.on_episode_toggled(profile_id, show_id, season, episode, payload.watched)
        return {"showId": show_id, "season": season, "episode": episode, "watched": payload.watched}

    @fastapi_app.put("/profiles/{profile_id}/movies/{movie_id}/watched")
    async def toggle_movie(
        profile_id: str, movie_id: str, payload: WatchedToggle
    ) -> dict[str, Any]:
        service = get_watch_state_service(fastapi_app)
        await service.on_movie_toggled(profile_id, movie_id, payload.watched)
        return {"movieId": movie_id, "watched": payload.watched}


app = create_app()
