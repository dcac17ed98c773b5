"""Tests for per-event pushes and mapping cleanup after local deletes."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from eventsync.sync.errors import ProviderRequestError
from eventsync.sync.types import SyncDirection

pytestmark = pytest.mark.unit

LONG_AGO = datetime.now(UTC) - timedelta(days=2)


class TestSyncSpecificEvents:
    async def test_create_then_update(self, service, make_config, event_store, sync_store, remote):
        config = make_config(SyncDirection.PUSH)
        event = event_store.add_event(
            user_id=config.user_id, summary="Repair café", updated_at=LONG_AGO
        )

        await service.sync_specific_events(config.user_id, [event.id])

        mapping = await sync_store.get_mapping_for_event(config.id, event.id)
        assert mapping is not None
        assert len(remote.calls_to("push")) == 1

        event_store.events[event.id] = event.model_copy(update={"summary": "Repair café (full)"})
        await service.sync_specific_events(config.user_id, [event.id])

        assert remote.calls_to("update") == [mapping.external_id]
        assert len(remote.calls_to("push")) == 1
        assert remote.events[mapping.external_id].summary == "Repair café (full)"
        updated = await sync_store.get_mapping_for_event(config.id, event.id)
        assert updated.etag != mapping.etag

    async def test_mapping_exists_before_webhook_pull(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.BIDIRECTIONAL)
        event = event_store.add_event(
            user_id=config.user_id, summary="Lantern walk", updated_at=LONG_AGO
        )

        await service.sync_specific_events(config.user_id, [event.id])
        result = await service.sync(config.id)

        assert result.events_created == 0
        assert len(event_store.events) == 1
        assert len(await sync_store.list_mappings(config.id)) == 1
        assert len(remote.calls_to("push")) == 1

    async def test_missing_event_deletes_remote_copy(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        event = event_store.add_event(
            user_id=config.user_id, summary="Cancelled", updated_at=LONG_AGO
        )
        await service.sync_specific_events(config.user_id, [event.id])
        mapping = await sync_store.get_mapping_for_event(config.id, event.id)
        await event_store.delete_event(event.id)

        await service.sync_specific_events(config.user_id, [event.id])

        assert remote.calls_to("delete") == [mapping.external_id]
        assert await sync_store.list_mappings(config.id) == []

    async def test_event_of_another_user_is_treated_as_missing(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        event = event_store.add_event(user_id=config.user_id, summary="Handed over")
        await service.sync_specific_events(config.user_id, [event.id])
        event_store.events[event.id] = event.model_copy(update={"user_id": "user-9"})

        await service.sync_specific_events(config.user_id, [event.id])

        assert len(remote.calls_to("delete")) == 1
        assert await sync_store.get_mapping_for_event(config.id, event.id) is None

    async def test_pull_only_configs_are_skipped(self, service, make_config, event_store, remote):
        config = make_config(SyncDirection.PULL)
        event = event_store.add_event(user_id=config.user_id, summary="Local")

        await service.sync_specific_events(config.user_id, [event.id])

        assert remote.calls_to("initialize") == []

    async def test_remote_failure_is_logged_not_raised(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        event = event_store.add_event(user_id=config.user_id, summary="Flaky")
        remote.fail(
            "push",
            ProviderRequestError(
                status_code=500, provider="Fake", operation="create event", message="boom"
            ),
        )

        await service.sync_specific_events(config.user_id, [event.id])

        assert await sync_store.list_mappings(config.id) == []

    async def test_trigger_push_sync_schedules_full_passes(
        self, service, make_config, sync_store, runner
    ):
        push = make_config(SyncDirection.PUSH)
        make_config(SyncDirection.PULL)

        await service.trigger_push_sync(push.user_id)
        await runner.join()

        assert [op.sync_config_id for op in sync_store.operations.values()] == [push.id]


class TestDeleteEventMappings:
    async def test_remote_delete_failure_still_removes_mappings(
        self, service, make_config, event_store, sync_store, remote
    ):
        config = make_config(SyncDirection.PUSH)
        event = event_store.add_event(user_id=config.user_id, summary="Doomed", updated_at=LONG_AGO)
        await service.sync_specific_events(config.user_id, [event.id])
        remote.fail(
            "delete",
            ProviderRequestError(
                status_code=500, provider="Fake", operation="delete event", message="down"
            ),
        )

        removed = await service.delete_event_mappings(config.user_id, [event.id])

        assert removed == 1
        assert len(remote.calls_to("delete")) == 1
        assert await sync_store.list_mappings(config.id) == []

    async def test_pull_only_mappings_removed_without_remote_call(
        self, service, make_config, sync_store, remote
    ):
        config = make_config(SyncDirection.PULL)
        await sync_store.upsert_event_mapping(
            config_id=config.id,
            event_id="evt-1",
            external_id="g-1",
            provider_id=config.provider_id,
            etag=None,
            last_synced_at=LONG_AGO,
        )

        removed = await service.delete_event_mappings(config.user_id, ["evt-1", "evt-unknown"])

        assert removed == 1
        assert remote.calls_to("delete") == []
