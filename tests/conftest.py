"""Shared fixtures: an in-memory sync engine wired to a programmable provider."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from eventsync.config import SyncTuning
from eventsync.core.tasks import BackgroundTaskRunner
from eventsync.sync.registry import ProviderRegistry
from eventsync.sync.service import SyncService
from eventsync.sync.store import User
from eventsync.sync.types import ProviderType, SyncConfiguration, SyncDirection
from eventsync.testing import (
    FakeRemote,
    InMemoryAssetProvider,
    InMemoryContactDirectory,
    InMemoryEventStore,
    InMemorySyncStore,
    InMemoryUserDirectory,
    RecordingPublisher,
)

OWNER = User(id="user-1", name="Ada Organizer", email="ada@example.org")
LONG_AGO = datetime.now(UTC) - timedelta(days=2)


def _offline_transport(request: httpx.Request) -> httpx.Response:
    return httpx.Response(599, json={"error": f"unexpected request to {request.url}"})


@pytest.fixture
def sync_store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def contacts() -> InMemoryContactDirectory:
    return InMemoryContactDirectory()


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory([OWNER])


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def registry(remote: FakeRemote) -> ProviderRegistry:
    registry = ProviderRegistry()
    remote.register(registry)
    return registry


@pytest.fixture
async def runner():
    runner = BackgroundTaskRunner()
    yield runner
    await runner.shutdown(timeout_s=1.0)


@pytest.fixture
def service(
    sync_store, event_store, contacts, users, registry, runner, publisher
) -> SyncService:
    return SyncService(
        store=sync_store,
        events=event_store,
        contacts=contacts,
        users=users,
        assets=InMemoryAssetProvider(),
        registry=registry,
        runner=runner,
        publisher=publisher,
        env={},
        tuning=SyncTuning(),
        base_url="https://app.example.org",
        http_client_factory=lambda timeout: httpx.AsyncClient(
            transport=httpx.MockTransport(_offline_transport), timeout=timeout
        ),
    )


@pytest.fixture
def make_config(sync_store: InMemorySyncStore):
    def _make(
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        provider_type: ProviderType = ProviderType.GOOGLE_CALENDAR,
        **fields,
    ) -> SyncConfiguration:
        fields.setdefault("user_id", OWNER.id)
        fields.setdefault("provider_id", "primary")
        return sync_store.add_config(direction=direction, provider_type=provider_type, **fields)

    return _make
