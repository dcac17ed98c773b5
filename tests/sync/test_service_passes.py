"""Tests for full sync passes run by eventsync.sync.service.SyncService."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from eventsync.sync.errors import (
    ProviderConfigurationError,
    ProviderRequestError,
    SyncConfigDisabledError,
    SyncConfigNotFoundError,
)
from eventsync.sync.types import (
    ExternalEvent,
    OperationKind,
    OperationStatus,
    SyncDirection,
)
from eventsync.testing import FakeRemote

pytestmark = pytest.mark.unit

START = datetime(2026, 4, 2, 18, 0, tzinfo=UTC)
LONG_AGO = datetime.now(UTC) - timedelta(days=2)


def _remote_event(summary: str, start: datetime = START, **fields) -> ExternalEvent:
    return ExternalEvent(
        summary=summary, start_datetime=start, end_datetime=start + timedelta(hours=2), **fields
    )


class TestPassLifecycle:
    async def test_unknown_config_raises(self, service):
        with pytest.raises(SyncConfigNotFoundError):
            await service.sync("missing")

    async def test_disabled_config_raises(self, service, make_config):
        config = make_config(enabled=False)
        with pytest.raises(SyncConfigDisabledError):
            await service.sync(config.id)

    async def test_operation_recorded_and_next_sync_scheduled(
        self, service, make_config, sync_store, remote
    ):
        config = make_config(SyncDirection.PULL, settings={"sync_interval_minutes": 15})
        remote.add_event(_remote_event("Choir rehearsal"))

        result = await service.sync(config.id)

        assert result.success
        operation = sync_store.operations[result.operation_id]
        assert operation.operation is OperationKind.PULL
        assert operation.status is OperationStatus.COMPLETED
        assert operation.error is None
        stored = sync_store.configs[config.id]
        assert stored.next_sync_at - stored.last_sync_at == timedelta(minutes=15)
        assert remote.shutdowns == 1

    async def test_setup_failure_fails_operation_and_propagates(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        remote.fail("initialize", ProviderConfigurationError("missing refresh token"))

        with pytest.raises(ProviderConfigurationError):
            await service.sync(config.id)

        (operation,) = sync_store.operations.values()
        assert operation.status is OperationStatus.FAILED
        assert operation.error[0]["phase"] == "setup"
        assert operation.error[0]["error_type"] == "ProviderConfigurationError"
        assert remote.shutdowns == 1

    async def test_pull_failure_is_collected(self, service, make_config, sync_store, remote):
        config = make_config(SyncDirection.PULL)
        remote.fail(
            "pull",
            ProviderRequestError(
                status_code=503, provider="Fake", operation="list events", message="unavailable"
            ),
        )

        result = await service.sync(config.id)

        assert not result.success
        assert [entry.phase for entry in result.errors] == ["pull"]
        assert result.errors[0].error_type == "ProviderRequestError"
        assert sync_store.operations[result.operation_id].status is OperationStatus.FAILED


class TestPull:
    async def test_pull_is_idempotent(self, service, make_config, event_store, sync_store, remote):
        config = make_config(SyncDirection.PULL)
        remote.add_event(_remote_event("Book club"))

        first = await service.sync(config.id)
        second = await service.sync(config.id)

        assert first.events_created == 1
        assert second.events_created == 0
        assert len(event_store.events) == 1
        assert len(await sync_store.list_mappings(config.id)) == 1

    async def test_sync_token_stored_and_reused(self, service, make_config, sync_store, remote):
        config = make_config(SyncDirection.PULL)
        remote.next_sync_token = "token-1"

        await service.sync(config.id)
        remote.next_sync_token = "token-2"
        await service.sync(config.id)

        assert remote.calls_to("pull") == [None, "token-1"]
        assert sync_store.configs[config.id].sync_token == "token-2"

    async def test_expired_token_falls_back_to_full_pull(
        self, service, make_config, sync_store, remote
    ):
        config = make_config(SyncDirection.PULL, sync_token="stale")
        remote.expired_tokens.add("stale")
        remote.next_sync_token = "fresh"

        result = await service.sync(config.id)

        assert result.success
        assert remote.calls_to("pull") == ["stale", None]
        assert sync_store.configs[config.id].sync_token == "fresh"


class TestCapabilityGating:
    async def test_unsupported_pull_phase_is_reported_and_skipped(
        self, service, make_config, event_store
    ):
        remote = FakeRemote(directions=frozenset({SyncDirection.PUSH}))
        remote.register(service.registry)
        config = make_config(SyncDirection.BIDIRECTIONAL)
        event_store.add_event(user_id=config.user_id, summary="Local only", updated_at=LONG_AGO)

        result = await service.sync(config.id)

        assert remote.calls_to("pull") == []
        assert [entry.error_type for entry in result.errors] == ["UnsupportedOperationError"]
        assert result.errors[0].phase == "pull"
        assert result.events_pushed == 1

    async def test_push_only_config_never_pulls(self, service, make_config, remote):
        config = make_config(SyncDirection.PUSH)
        remote.add_event(_remote_event("Remote only"))

        result = await service.sync(config.id)

        assert result.success
        assert remote.calls_to("pull") == []


class TestPush:
    async def test_unmapped_events_are_created_remotely(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        local = event_store.add_event(
            user_id=config.user_id, summary="Open studio", start_datetime=START, updated_at=LONG_AGO
        )
        event_store.add_event(user_id="someone-else", summary="Not mine", updated_at=LONG_AGO)

        result = await service.sync(config.id)

        assert result.events_pushed == 1
        (pushed,) = remote.calls_to("push")
        assert pushed.summary == "Open studio"
        assert pushed.metadata["app_event_id"] == local.id
        mapping = await sync_store.get_mapping_for_event(config.id, local.id)
        assert mapping.external_id in remote.events

    async def test_only_stale_mappings_are_updated(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        fresh = event_store.add_event(user_id=config.user_id, summary="Fresh", updated_at=LONG_AGO)
        edited = event_store.add_event(
            user_id=config.user_id, summary="Edited", updated_at=LONG_AGO
        )
        await service.sync(config.id)
        event_store.set_updated_at(edited.id, datetime.now(UTC) + timedelta(seconds=1))

        result = await service.sync(config.id)

        mapping = await sync_store.get_mapping_for_event(config.id, edited.id)
        assert remote.calls_to("update") == [mapping.external_id]
        assert result.events_pushed == 1
        assert fresh.id in {m.event_id for m in await sync_store.list_mappings(config.id)}

    async def test_naive_local_timestamps_are_read_as_utc(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        local = event_store.add_event(
            user_id=config.user_id,
            summary="Naive clock",
            updated_at=LONG_AGO.replace(tzinfo=None),
        )
        await service.sync(config.id)
        edited_at = datetime.now(UTC) + timedelta(seconds=1)
        event_store.set_updated_at(local.id, edited_at.replace(tzinfo=None))

        result = await service.sync(config.id)

        assert result.success
        mapping = await sync_store.get_mapping_for_event(config.id, local.id)
        assert remote.calls_to("update") == [mapping.external_id]
        assert result.events_pushed == 1

    async def test_single_push_failure_does_not_stop_the_pass(
        self, service, make_config, event_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        event_store.add_event(user_id=config.user_id, summary="A", updated_at=LONG_AGO)
        remote.fail(
            "push",
            ProviderRequestError(
                status_code=400, provider="Fake", operation="create event", message="bad request"
            ),
        )

        result = await service.sync(config.id)

        assert not result.success
        assert result.errors[0].phase == "push"
        assert result.errors[0].entity_id is not None


class TestBidirectional:
    async def test_created_and_matched_then_updated_on_later_pass(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.BIDIRECTIONAL)
        planning = event_store.add_event(
            user_id=config.user_id, summary="Planning", start_datetime=START, updated_at=LONG_AGO
        )
        remote.add_event(_remote_event("Board meeting", START + timedelta(days=1)))
        remote_planning = remote.add_event(_remote_event("Planning"))

        first = await service.sync(config.id)

        assert first.errors == []
        assert first.events_created == 1
        assert first.events_matched == 1
        assert first.events_pushed == 0
        assert len(await sync_store.list_mappings(config.id)) == 2
        assert len(event_store.events) == 2

        remote.events[remote_planning.external_id] = remote_planning.model_copy(
            update={"summary": "Planning (moved)", "etag": "etag-new"}
        )
        second = await service.sync(config.id)

        assert second.errors == []
        assert second.events_updated == 1
        assert event_store.events[planning.id].summary == "Planning (moved)"
        assert len(await sync_store.list_mappings(config.id)) == 2
        assert remote.calls_to("update") == []

    async def test_pulled_changes_are_not_pushed_back(
        self, service, make_config, event_store, remote
    ):
        config = make_config(SyncDirection.BIDIRECTIONAL)
        remote.add_event(_remote_event("Pulled in"))

        await service.sync(config.id)
        second = await service.sync(config.id)

        assert remote.calls_to("push") == []
        assert remote.calls_to("update") == []
        assert second.events_pushed == 0


class TestScheduling:
    async def test_run_due_only_runs_due_enabled_configs(self, service, make_config, sync_store):
        due = make_config(SyncDirection.PULL)
        make_config(SyncDirection.PULL, next_sync_at=datetime.now(UTC) + timedelta(hours=1))
        make_config(SyncDirection.PULL, enabled=False)

        results = await service.run_due()

        assert [r.config_id for r in results] == [due.id]

    async def test_run_due_continues_after_a_failing_config(
        self, service, make_config, remote
    ):
        make_config(SyncDirection.PULL)
        make_config(SyncDirection.PULL)
        remote.fail("initialize", ProviderConfigurationError("broken"))

        assert await service.run_due() == []
        assert len(remote.calls_to("initialize")) == 2
