"""Push-notification subscription lifecycle: setup, renewal sweep, cancellation."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from datetime import UTC, datetime, timedelta

from eventsync.config import SyncTuning
from eventsync.providers.base import SyncProvider
from eventsync.sync.errors import SyncConfigNotFoundError, SyncError
from eventsync.sync.store import SyncStore
from eventsync.sync.types import (
    ProviderType,
    SyncConfiguration,
    WebhookRegistration,
    WebhookStatus,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

ProviderSession = Callable[[SyncConfiguration], AbstractAsyncContextManager[SyncProvider]]
CallbackUrlBuilder = Callable[[ProviderType | str], str]


def _subscription_from(
    config: SyncConfiguration, registration: WebhookRegistration, now: datetime
) -> WebhookSubscription:
    return WebhookSubscription(
        id=str(uuid.uuid4()),
        sync_config_id=config.id,
        provider_id=config.provider_id,
        resource_id=registration.resource_id,
        channel_id=registration.channel_id,
        expires_at=registration.expires_at,
        created_at=now,
    )


class WebhookManager:
    """Keeps each configuration's webhook subscriptions in step with the provider."""

    def __init__(
        self,
        store: SyncStore,
        provider_session: ProviderSession,
        callback_url: CallbackUrlBuilder,
        tuning: SyncTuning | None = None,
    ) -> None:
        self._store = store
        self._provider_session = provider_session
        self._callback_url = callback_url
        self._tuning = tuning or SyncTuning()

    async def _require_config(self, config_id: str) -> SyncConfiguration:
        config = await self._store.get_config(config_id)
        if config is None:
            raise SyncConfigNotFoundError(config_id)
        return config

    async def setup_webhook(self, config_id: str) -> WebhookSubscription | None:
        """Register a fresh subscription, replacing any existing ones.

        Returns None when the provider has no webhook support.
        """
        config = await self._require_config(config_id)
        async with self._provider_session(config) as provider:
            if not provider.supports_webhooks:
                logger.info("%s does not support webhooks; nothing to set up", provider.name)
                return None
            await self._drop_subscriptions(config, provider)

            registration = await provider.setup_webhook(self._callback_url(config.provider_type))
            subscription = await self._store.create_webhook_subscription(
                _subscription_from(config, registration, datetime.now(UTC))
            )
        await self._store.set_webhook_id(config.id, subscription.id)
        logger.info(
            "Webhook %s registered for config %s (expires %s)",
            subscription.id,
            config.id,
            subscription.expires_at.isoformat(),
        )
        return subscription

    async def remove_webhook(self, config_id: str) -> None:
        """Cancel and delete every subscription of the configuration.

        Local records are deleted even when the provider cannot be reached.
        """
        config = await self._store.get_config(config_id)
        if config is None:
            return
        async with AsyncExitStack() as stack:
            provider: SyncProvider | None = None
            try:
                provider = await stack.enter_async_context(self._provider_session(config))
            except SyncError:
                logger.warning(
                    "Could not open provider while removing webhooks for %s",
                    config_id,
                    exc_info=True,
                )
            await self._drop_subscriptions(config, provider)
        await self._store.set_webhook_id(config.id, None)

    async def cancel_webhook(self, config_id: str) -> None:
        """Cancel the subscription referenced by the configuration's webhook id."""
        config = await self._store.get_config(config_id)
        if config is None or config.webhook_id is None:
            return
        subscriptions = await self._store.list_webhook_subscriptions(config.id)
        subscription = next((s for s in subscriptions if s.id == config.webhook_id), None)
        if subscription is not None:
            async with AsyncExitStack() as stack:
                provider: SyncProvider | None = None
                try:
                    provider = await stack.enter_async_context(self._provider_session(config))
                except SyncError:
                    logger.warning(
                        "Could not open provider while cancelling webhook %s",
                        subscription.id,
                        exc_info=True,
                    )
                await self._cancel_remote(provider, subscription)
            await self._store.delete_webhook_subscription(subscription.id)
        await self._store.set_webhook_id(config.id, None)

    async def check_webhook_status(self, config_id: str) -> WebhookStatus:
        subscriptions = await self._store.list_webhook_subscriptions(config_id)
        if not subscriptions:
            return WebhookStatus(active=False)
        newest = max(subscriptions, key=lambda s: s.created_at)
        return WebhookStatus(
            active=newest.expires_at > datetime.now(UTC), expires_at=newest.expires_at
        )

    async def renew_webhooks(self, now: datetime | None = None) -> int:
        """Renew subscriptions expiring within the renewal window.

        Subscriptions of missing or disabled configurations are deleted.
        Returns the number of subscriptions renewed.
        """
        now = now or datetime.now(UTC)
        horizon = now + timedelta(hours=self._tuning.webhook_renewal_window_hours)
        renewed = 0
        for subscription in await self._store.list_expiring_subscriptions(horizon):
            try:
                if await self._renew_one(subscription, now):
                    renewed += 1
            except Exception:
                logger.exception("Failed to renew webhook subscription %s", subscription.id)
        if renewed:
            logger.info("Renewed %d webhook subscription(s)", renewed)
        return renewed

    async def _renew_one(self, subscription: WebhookSubscription, now: datetime) -> bool:
        config = await self._store.get_config(subscription.sync_config_id)
        if config is None or not config.enabled:
            logger.info(
                "Deleting webhook subscription %s of missing or disabled config %s",
                subscription.id,
                subscription.sync_config_id,
            )
            await self._store.delete_webhook_subscription(subscription.id)
            return False

        async with self._provider_session(config) as provider:
            if not provider.supports_webhooks:
                return False
            registration = await provider.renew_webhook(
                subscription, self._callback_url(config.provider_type)
            )

        await self._store.replace_webhook_subscription(
            subscription.id, _subscription_from(config, registration, now)
        )
        return True

    async def _drop_subscriptions(
        self, config: SyncConfiguration, provider: SyncProvider | None
    ) -> None:
        for subscription in await self._store.list_webhook_subscriptions(config.id):
            await self._cancel_remote(provider, subscription)
            await self._store.delete_webhook_subscription(subscription.id)

    async def _cancel_remote(
        self, provider: SyncProvider | None, subscription: WebhookSubscription
    ) -> None:
        if provider is None or not provider.supports_webhooks:
            return
        try:
            await provider.cancel_webhook(subscription)
        except Exception:
            logger.warning(
                "Failed to cancel webhook %s remotely", subscription.id, exc_info=True
            )
