"""Incremental details loading and supersession."""

from __future__ import annotations

import asyncio

import pytest

from app.models import WatchedEpisodeKey
from app.services.details import DetailsLoader, DetailsState
from app.services.watch_state import WatchStateService


@pytest.mark.anyio("asyncio")
async def test_details_publish_final_state(test_settings, local_store, remote, metadata):
    remote.episodes = {"p1": {WatchedEpisodeKey("1399", 1, 1)}}
    metadata.seasons = {"1399": {1: [1, 2]}}
    service = WatchStateService(test_settings, local_store, remote, metadata)
    await service.on_profile_switch("p1")
    updates: list[DetailsState] = []
    loader = DetailsLoader(service, on_update=updates.append)

    state = await loader.load("p1", "series", "1399")

    assert state is not None
    assert state.loading is False
    assert state.is_watched is True
    assert state.play_target is not None
    assert state.play_target.label == "Continue S1-E2"
    assert updates[0].loading is True
    assert updates[-1] == state
    payload = state.to_payload()
    assert payload["seasonProgress"]["next_unwatched"] == [1, 2]


@pytest.mark.anyio("asyncio")
async def test_newer_title_supersedes_older_load(test_settings, local_store, remote, metadata):
    remote.watched_gate = asyncio.Event()
    metadata.seasons = {"1399": {1: [1]}, "60574": {1: [1]}}
    service = WatchStateService(test_settings, local_store, remote, metadata)
    await service.on_profile_switch("p1")
    loader = DetailsLoader(service)

    older = asyncio.create_task(loader.load("p1", "series", "1399"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(loader.load("p1", "series", "60574"))
    await asyncio.sleep(0)
    remote.watched_gate.set()

    assert await older is None
    newer_state = await newer
    assert newer_state is not None
    assert loader.state == newer_state
    assert loader.state.content_id == "60574"


@pytest.mark.anyio("asyncio")
async def test_profile_switch_resets_loader(test_settings, local_store, remote, metadata):
    service = WatchStateService(test_settings, local_store, remote, metadata)
    await service.on_profile_switch("p1")
    loader = DetailsLoader(service)
    service.cache.register_clear_hook(loader.reset)
    await loader.load("p1", "movie", "550")

    await service.on_profile_switch("p2")

    assert loader.state is None
    assert await loader.refresh() is None
