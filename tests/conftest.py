"""Shared fixtures: in-memory storage, a scripted Google client, a fixed clock."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from calsync.config import SyncSettings
from calsync.orchestrator import ImportOrchestrator
from calsync.storage.memory import InMemoryStore
from calsync.testing import FixedClock, ScriptedCalendarClient, credential


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def calendar_client() -> ScriptedCalendarClient:
    return ScriptedCalendarClient()


@pytest.fixture
def make_orchestrator(
    store: InMemoryStore,
    calendar_client: ScriptedCalendarClient,
    clock: FixedClock,
) -> Callable[..., ImportOrchestrator]:
    """Build an orchestrator over the shared fixtures; kwargs become ``SyncSettings``."""

    def _make(**settings: Any) -> ImportOrchestrator:
        return ImportOrchestrator(
            store,
            store,
            store,
            calendar_client,  # type: ignore[arg-type]
            settings=SyncSettings(**settings),
            clock=clock,
        )

    return _make


@pytest.fixture
async def connected_user(store: InMemoryStore) -> str:
    await store.save_credential("user-1", credential())
    return "user-1"
