"""Test doubles for the sync engine: in-memory stores and a programmable provider."""

from eventsync.testing.fakes import FakeProvider, FakeRemote, mock_http_context
from eventsync.testing.memory import (
    InMemoryAssetProvider,
    InMemoryContactDirectory,
    InMemoryEventStore,
    InMemorySyncStore,
    InMemoryUserDirectory,
    RecordingPublisher,
)

__all__ = [
    "FakeProvider",
    "FakeRemote",
    "InMemoryAssetProvider",
    "InMemoryContactDirectory",
    "InMemoryEventStore",
    "InMemorySyncStore",
    "InMemoryUserDirectory",
    "RecordingPublisher",
    "mock_http_context",
]
