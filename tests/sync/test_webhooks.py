"""Tests for webhook subscription lifecycle and inbound webhook dispatch."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from eventsync.sync.errors import (
    ProviderConfigurationError,
    SyncConfigNotFoundError,
    UnknownProviderError,
)
from eventsync.sync.types import (
    DeliveryChange,
    ProviderType,
    SyncDirection,
    WebhookSubscription,
)
from eventsync.testing import FakeRemote

pytestmark = pytest.mark.unit


def _subscription(config, *, expires_in: timedelta, created_ago=timedelta(days=6)):
    now = datetime.now(UTC)
    return WebhookSubscription(
        id=str(uuid.uuid4()),
        sync_config_id=config.id,
        provider_id=config.provider_id,
        resource_id="resource-old",
        channel_id="channel-old",
        expires_at=now + expires_in,
        created_at=now - created_ago,
    )


class TestSetup:
    async def test_setup_stores_subscription_and_webhook_id(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()

        subscription = await service.setup_webhook(config.id)

        assert subscription is not None
        assert sync_store.subscriptions == {subscription.id: subscription}
        assert sync_store.configs[config.id].webhook_id == subscription.id
        assert remote.calls_to("setup_webhook") == [
            "https://app.example.org/api/sync/webhook/google-calendar"
        ]

    async def test_setup_replaces_existing_subscriptions(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        old = await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(days=3))
        )

        new = await service.setup_webhook(config.id)

        assert remote.calls_to("cancel_webhook") == [old.id]
        assert list(sync_store.subscriptions) == [new.id]

    async def test_setup_without_webhook_support_returns_none(
        self, service, make_config, sync_store
    ):
        FakeRemote(supports_webhooks=False).register(service.registry)
        config = make_config()

        assert await service.setup_webhook(config.id) is None
        assert sync_store.subscriptions == {}

    async def test_setup_for_unknown_config_raises(self, service):
        with pytest.raises(SyncConfigNotFoundError):
            await service.setup_webhook("missing")


class TestStatusAndRemoval:
    async def test_status_reflects_newest_subscription(self, service, make_config, sync_store):
        config = make_config()
        assert (await service.check_webhook_status(config.id)).active is False

        subscription = await service.setup_webhook(config.id)
        status = await service.check_webhook_status(config.id)

        assert status.active is True
        assert status.expires_at == subscription.expires_at

    async def test_expired_subscription_is_inactive(self, service, make_config, sync_store):
        config = make_config()
        await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(hours=-1))
        )

        assert (await service.check_webhook_status(config.id)).active is False

    async def test_remove_cancels_and_clears(self, service, make_config, sync_store, remote):
        config = make_config()
        subscription = await service.setup_webhook(config.id)

        await service.remove_webhook(config.id)

        assert remote.calls_to("cancel_webhook") == [subscription.id]
        assert sync_store.subscriptions == {}
        assert sync_store.configs[config.id].webhook_id is None

    async def test_remove_deletes_locally_when_provider_unavailable(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        await service.setup_webhook(config.id)
        remote.fail("initialize", ProviderConfigurationError("credentials revoked"))

        await service.remove_webhook(config.id)

        assert sync_store.subscriptions == {}
        assert remote.calls_to("cancel_webhook") == []

    async def test_cancel_only_touches_referenced_subscription(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        stray = await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(days=2), created_ago=timedelta(days=9))
        )
        current = await service.setup_webhook(config.id)
        # setup drops everything older; put the stray row back
        await sync_store.create_webhook_subscription(stray)

        await service.cancel_webhook(config.id)

        assert remote.calls_to("cancel_webhook")[-1] == current.id
        assert list(sync_store.subscriptions) == [stray.id]
        assert sync_store.configs[config.id].webhook_id is None


class TestRenewal:
    async def test_expiring_subscription_is_swapped(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        old = await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(hours=2))
        )
        await sync_store.set_webhook_id(config.id, old.id)

        renewed = await service.renew_webhooks()

        assert renewed == 1
        assert remote.calls_to("renew_webhook") == [old.id]
        assert old.id not in sync_store.subscriptions
        (replacement,) = sync_store.subscriptions.values()
        assert replacement.expires_at > old.expires_at
        assert sync_store.configs[config.id].webhook_id == replacement.id

    async def test_subscriptions_outside_window_are_left_alone(
        self, service, make_config, sync_store, remote
    ):
        config = make_config()
        await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(days=5))
        )

        assert await service.renew_webhooks() == 0
        assert remote.calls_to("renew_webhook") == []

    async def test_disabled_config_subscription_is_deleted(
        self, service, make_config, sync_store, remote
    ):
        config = make_config(enabled=False)
        await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(hours=1))
        )

        assert await service.renew_webhooks() == 0
        assert sync_store.subscriptions == {}
        assert remote.calls_to("renew_webhook") == []

    async def test_one_failure_does_not_stop_the_sweep(
        self, service, make_config, sync_store, remote
    ):
        first = make_config()
        second = make_config()
        for config in (first, second):
            await sync_store.create_webhook_subscription(
                _subscription(config, expires_in=timedelta(hours=1))
            )
        remote.fail("renew_webhook", ProviderConfigurationError("nope"))

        assert await service.renew_webhooks() == 0
        assert len(remote.calls_to("renew_webhook")) == 2
        assert len(sync_store.subscriptions) == 2

    async def test_failed_swap_keeps_the_old_subscription(
        self, service, make_config, sync_store, remote, monkeypatch
    ):
        config = make_config()
        old = await sync_store.create_webhook_subscription(
            _subscription(config, expires_in=timedelta(hours=2))
        )
        await sync_store.set_webhook_id(config.id, old.id)
        monkeypatch.setattr(
            sync_store,
            "create_webhook_subscription",
            AsyncMock(side_effect=RuntimeError("insert failed")),
        )

        assert await service.renew_webhooks() == 0
        assert remote.calls_to("renew_webhook") == [old.id]
        assert sync_store.subscriptions == {old.id: old}
        assert sync_store.configs[config.id].webhook_id == old.id


class TestInboundWebhooks:
    async def test_unknown_provider_type_is_rejected(self, service):
        with pytest.raises(UnknownProviderError):
            await service.handle_webhook("meetup", {"event": "x"})

    async def test_dispatch_syncs_every_enabled_config_in_background(
        self, service, make_config, sync_store, runner, remote
    ):
        first = make_config(SyncDirection.PULL)
        second = make_config(SyncDirection.PULL)
        make_config(SyncDirection.PULL, enabled=False)

        payload = {"x-goog-resource-state": "exists"}
        dispatch = await service.handle_webhook("google-calendar", payload)
        await runner.join()

        assert dispatch.processed is True
        assert sorted(dispatch.config_ids) == sorted([first.id, second.id])
        assert sorted(op.sync_config_id for op in sync_store.operations.values()) == sorted(
            [first.id, second.id]
        )
        assert len(remote.calls_to("process_webhook")) == 2

    async def test_delivery_changes_are_recorded_once(
        self, service, make_config, sync_store, runner
    ):
        remote = FakeRemote(ProviderType.EMAIL, directions=frozenset({SyncDirection.PUSH}))
        remote.delivery_changes = [
            DeliveryChange(campaign_id="42", event="opened", email="kim@example.org")
        ]
        remote.register(service.registry)
        config = make_config(SyncDirection.PUSH, provider_type=ProviderType.EMAIL)

        await service.handle_webhook("email", [{"event": "opened"}])
        await runner.join()
        await service.handle_webhook("email", [{"event": "opened"}])
        await runner.join()

        assert [cfg for cfg, _ in sync_store.deliveries] == [config.id]

    async def test_payload_failure_still_runs_the_full_pass(
        self, service, make_config, sync_store, runner, remote
    ):
        config = make_config(SyncDirection.PULL)
        remote.fail("process_webhook", ValueError("malformed payload"))

        await service.handle_webhook("google-calendar", {"event": "garbled"})
        await runner.join()

        assert [op.sync_config_id for op in sync_store.operations.values()] == [config.id]
        assert remote.calls_to("pull") == [None]
