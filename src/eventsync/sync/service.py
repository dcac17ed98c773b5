"""Sync orchestrator.

``SyncService`` is constructed once per process with its collaborators
injected.  It owns the provider registry and runs passes per configuration:

    load config -> create operation (pending) -> open adapter
        -> pull phase (pull / bidirectional): pull_events, reconcile each
        -> push phase (push / bidirectional): create unmapped, update stale
        -> operation completed | failed, next_sync_at scheduled

Adapter failures inside a phase become entries of the operation's error
list.  Setup failures (adapter cannot be built or initialized) fail the whole
pass and propagate.  Targeted syncs and background triggers log and swallow.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from eventsync.config import DEFAULT_BASE_URL, SyncTuning
from eventsync.core.metrics import SyncMetrics
from eventsync.core.tasks import BackgroundTaskRunner
from eventsync.core.telemetry import sync_span
from eventsync.providers.base import ProviderContext, SyncProvider
from eventsync.sync.errors import (
    SyncConfigDisabledError,
    SyncConfigNotFoundError,
    SyncTokenExpiredError,
    UnknownProviderError,
    UnsupportedOperationError,
    describe_error,
)
from eventsync.sync.mapping import EventMapper
from eventsync.sync.reconcile import ReconcileAction, Reconciler
from eventsync.sync.registry import ProviderRegistry, default_registry
from eventsync.sync.settings import sync_interval_minutes
from eventsync.sync.store import (
    AssetProvider,
    ChangePublisher,
    ContactDirectory,
    EventStore,
    SyncStore,
    UserDirectory,
)
from eventsync.sync.types import (
    OperationKind,
    OperationStatus,
    ProviderType,
    PullResult,
    SyncConfiguration,
    SyncErrorEntry,
    SyncMapping,
    SyncOperation,
    SyncResult,
    WebhookDispatch,
    WebhookStatus,
    WebhookSubscription,
    as_utc,
)
from eventsync.sync.webhooks import WebhookManager

logger = logging.getLogger(__name__)


def _error_entry(
    phase: str,
    exc: BaseException,
    *,
    entity_id: str | None = None,
    external_id: str | None = None,
) -> SyncErrorEntry:
    detail = describe_error(exc)
    return SyncErrorEntry(
        phase=phase,
        message=detail["message"],
        error_type=detail["error_type"],
        entity_id=entity_id,
        external_id=external_id,
    )


class SyncService:
    def __init__(
        self,
        *,
        store: SyncStore,
        events: EventStore,
        contacts: ContactDirectory,
        users: UserDirectory,
        assets: AssetProvider,
        registry: ProviderRegistry | None = None,
        runner: BackgroundTaskRunner | None = None,
        publisher: ChangePublisher | None = None,
        env: Mapping[str, str] | None = None,
        tuning: SyncTuning | None = None,
        base_url: str = DEFAULT_BASE_URL,
        http_client_factory: Callable[[float], httpx.AsyncClient] | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._registry = registry or default_registry()
        self._runner = runner or BackgroundTaskRunner()
        self._tuning = tuning or SyncTuning()

        context_kwargs: dict[str, Any] = {}
        if http_client_factory is not None:
            context_kwargs["http_client_factory"] = http_client_factory
        self._context = ProviderContext(
            users=users,
            contacts=contacts,
            assets=assets,
            env=os.environ if env is None else env,
            tuning=self._tuning,
            base_url=base_url,
            on_tokens_refreshed=self._store_refreshed_credentials,
            **context_kwargs,
        )
        self._mapper = EventMapper(events, contacts, users)
        self._reconciler = Reconciler(
            store, events, contacts, self._mapper, publisher=publisher, tuning=self._tuning
        )
        self.webhooks = WebhookManager(
            store, self.provider_session, self._context.webhook_callback_url, self._tuning
        )

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def runner(self) -> BackgroundTaskRunner:
        return self._runner

    @property
    def store(self) -> SyncStore:
        return self._store

    async def _store_refreshed_credentials(
        self, config: SyncConfiguration, credentials: dict[str, Any]
    ) -> None:
        await self._store.update_credentials(config.id, credentials)

    @asynccontextmanager
    async def provider_session(self, config: SyncConfiguration) -> AsyncIterator[SyncProvider]:
        """Build and initialize an adapter for *config*; always shut it down."""
        provider = self._registry.create(config.provider_type, self._context)
        try:
            await provider.initialize(config)
            yield provider
        finally:
            await provider.shutdown()

    # ------------------------------------------------------------------
    # Full pass
    # ------------------------------------------------------------------

    async def sync(self, config_id: str) -> SyncResult:
        """Run one sync pass for *config_id*.

        Raises
        ------
        SyncConfigNotFoundError, SyncConfigDisabledError
            If the configuration cannot be synced.
        SyncError
            If the adapter cannot be built or initialized; the operation is
            recorded as failed first.
        """
        config = await self._store.get_config(config_id)
        if config is None:
            raise SyncConfigNotFoundError(config_id)
        if not config.enabled:
            raise SyncConfigDisabledError(config_id)

        with sync_span("sync_pass", config) as span:
            result = await self._run_pass(config)
            span.set_attribute("sync.success", result.success)
            span.set_attribute("sync.errors", len(result.errors))
            return result

    async def _run_pass(self, config: SyncConfiguration) -> SyncResult:
        metrics = SyncMetrics(str(config.provider_type))
        started = time.monotonic()
        operation = await self._store.create_operation(
            SyncOperation(
                id=str(uuid.uuid4()),
                sync_config_id=config.id,
                operation=OperationKind.for_direction(config.direction),
                status=OperationStatus.PENDING,
                started_at=datetime.now(UTC),
            )
        )
        result = SyncResult(config_id=config.id, operation_id=operation.id)

        try:
            async with self.provider_session(config) as provider:
                if config.direction.includes_pull:
                    await self._pull_phase(config, provider, result, metrics)
                if config.direction.includes_push:
                    await self._push_phase(config, provider, result, metrics)
        except Exception as exc:
            logger.exception("Sync pass for config %s failed during setup", config.id)
            result.success = False
            result.errors.append(_error_entry("setup", exc))
            await self._finish_operation(operation.id, result)
            metrics.record_pass("failed", (time.monotonic() - started) * 1000)
            raise

        now = datetime.now(UTC)
        interval = sync_interval_minutes(config.settings, self._tuning.default_interval_minutes)
        await self._store.record_sync_times(
            config.id, last_sync_at=now, next_sync_at=now + timedelta(minutes=interval)
        )

        result.success = not result.errors
        await self._finish_operation(operation.id, result)
        metrics.record_pass(
            "completed" if result.success else "failed", (time.monotonic() - started) * 1000
        )
        logger.info(
            "Sync pass for config %s finished: pulled=%d created=%d updated=%d deleted=%d "
            "matched=%d pushed=%d errors=%d",
            config.id,
            result.events_pulled,
            result.events_created,
            result.events_updated,
            result.events_deleted,
            result.events_matched,
            result.events_pushed,
            len(result.errors),
        )
        return result

    async def _finish_operation(self, operation_id: str, result: SyncResult) -> None:
        await self._store.finish_operation(
            operation_id,
            status=OperationStatus.COMPLETED if result.success else OperationStatus.FAILED,
            error=[entry.model_dump() for entry in result.errors] or None,
            completed_at=datetime.now(UTC),
        )

    # -- pull --------------------------------------------------------------

    async def _pull_events(self, config: SyncConfiguration, provider: SyncProvider) -> PullResult:
        try:
            return await provider.pull_events(config.sync_token)
        except SyncTokenExpiredError:
            if config.sync_token is None:
                raise
            logger.info("Sync token for config %s expired; running a full pull", config.id)
            await self._store.set_sync_token(config.id, None)
            return await provider.pull_events(None)

    async def _pull_phase(
        self,
        config: SyncConfiguration,
        provider: SyncProvider,
        result: SyncResult,
        metrics: SyncMetrics,
    ) -> None:
        if not provider.can_pull:
            result.errors.append(
                _error_entry("pull", UnsupportedOperationError(provider.name, "pulling events"))
            )
            return
        try:
            pulled = await self._pull_events(config, provider)
        except Exception as exc:
            logger.warning(
                "Pull from %s failed for config %s", provider.name, config.id, exc_info=True
            )
            result.errors.append(_error_entry("pull", exc))
            return

        for external in pulled.events:
            try:
                outcome = await self._reconciler.reconcile(config, external)
            except Exception as exc:
                logger.warning(
                    "Failed to process pulled event %s", external.external_id, exc_info=True
                )
                result.errors.append(_error_entry("pull", exc, external_id=external.external_id))
                continue
            result.events_pulled += 1
            metrics.record_events("pull", outcome.action)
            if outcome.action is ReconcileAction.CREATED:
                result.events_created += 1
            elif outcome.action is ReconcileAction.UPDATED:
                result.events_updated += 1
            elif outcome.action is ReconcileAction.DELETED:
                result.events_deleted += 1
            elif outcome.action is ReconcileAction.MATCHED:
                result.events_matched += 1

        if pulled.next_sync_token:
            await self._store.set_sync_token(config.id, pulled.next_sync_token)

    # -- push --------------------------------------------------------------

    async def _push_phase(
        self,
        config: SyncConfiguration,
        provider: SyncProvider,
        result: SyncResult,
        metrics: SyncMetrics,
    ) -> None:
        if not provider.can_push:
            result.errors.append(
                _error_entry("push", UnsupportedOperationError(provider.name, "pushing events"))
            )
            return
        try:
            owned = await self._events.list_user_events(config.user_id)
            mappings = await self._store.list_mappings(config.id)
        except Exception as exc:
            logger.warning("Push preparation failed for config %s", config.id, exc_info=True)
            result.errors.append(_error_entry("push", exc))
            return

        mapped_ids = {mapping.event_id for mapping in mappings if mapping.event_id}
        for event in owned:
            if event.id in mapped_ids:
                continue
            try:
                external = await self._mapper.internal_to_external(event, config.provider_type)
                pushed = await provider.push_event(external)
                await self._store.upsert_event_mapping(
                    config_id=config.id,
                    event_id=event.id,
                    external_id=pushed.external_id,
                    provider_id=config.provider_id,
                    etag=pushed.etag,
                    last_synced_at=datetime.now(UTC),
                )
            except Exception as exc:
                logger.warning("Failed to push event %s", event.id, exc_info=True)
                result.errors.append(_error_entry("push", exc, entity_id=event.id))
                continue
            result.events_pushed += 1
            metrics.record_events("push", "created")

        for mapping in mappings:
            if mapping.event_id is None:
                continue
            try:
                event = await self._events.get_event(mapping.event_id)
                if event is None or as_utc(event.updated_at) <= as_utc(mapping.last_synced_at):
                    continue
                external = await self._mapper.internal_to_external(event, config.provider_type)
                updated = await provider.update_event(mapping.external_id, external)
                await self._store.touch_mapping(
                    mapping.id, etag=updated.etag, last_synced_at=datetime.now(UTC)
                )
            except Exception as exc:
                logger.warning(
                    "Failed to update event %s remotely", mapping.event_id, exc_info=True
                )
                result.errors.append(
                    _error_entry(
                        "push", exc, entity_id=mapping.event_id, external_id=mapping.external_id
                    )
                )
                continue
            result.events_pushed += 1
            metrics.record_events("push", "updated")

    # ------------------------------------------------------------------
    # Targeted sync
    # ------------------------------------------------------------------

    async def _push_configs(self, user_id: str) -> list[SyncConfiguration]:
        configs = await self._store.list_configs(user_id=user_id, enabled=True)
        return [config for config in configs if config.direction.includes_push]

    async def sync_specific_events(self, user_id: str, event_ids: list[str]) -> None:
        """Push creates, updates and deletes of *event_ids* to every push configuration."""
        try:
            configs = await self._push_configs(user_id)
        except Exception:
            logger.exception("Failed to load sync configurations for user %s", user_id)
            return

        for config in configs:
            try:
                async with self.provider_session(config) as provider:
                    if not provider.can_push:
                        logger.info("%s cannot push; skipping config %s", provider.name, config.id)
                        continue
                    for event_id in event_ids:
                        await self.sync_single_event(config, provider, event_id)
            except Exception:
                logger.exception("Targeted sync with config %s failed", config.id)

    async def sync_single_event(
        self, config: SyncConfiguration, provider: SyncProvider, event_id: str
    ) -> None:
        """Create, update or delete one event remotely; errors are logged, not raised."""
        try:
            event = await self._events.get_event(event_id)
            if event is not None and event.user_id != config.user_id:
                event = None
            mapping = await self._store.get_mapping_for_event(config.id, event_id)

            if event is None:
                if mapping is not None:
                    logger.info("Deleting event %s from %s", event_id, provider.name)
                    await provider.delete_event(mapping.external_id)
                    await self._store.delete_mapping(mapping.id)
                return

            external = await self._mapper.internal_to_external(event, config.provider_type)
            if mapping is not None:
                updated = await provider.update_event(mapping.external_id, external)
                await self._store.touch_mapping(
                    mapping.id, etag=updated.etag, last_synced_at=datetime.now(UTC)
                )
                return

            pushed = await provider.push_event(external)
            # Inserted right away so a webhook-triggered pull finds the mapping.
            await self._store.upsert_event_mapping(
                config_id=config.id,
                event_id=event.id,
                external_id=pushed.external_id,
                provider_id=config.provider_id,
                etag=pushed.etag,
                last_synced_at=datetime.now(UTC),
            )
            logger.info(
                "Created mapping for event %s -> external %s", event_id, pushed.external_id
            )
        except Exception:
            logger.exception("Failed to sync event %s with config %s", event_id, config.id)

    async def delete_event_mappings(self, user_id: str, event_ids: list[str]) -> int:
        """Delete remote copies of deleted events, then their mappings.

        Remote deletion is best effort; local mappings are always removed.
        Returns the number of mappings removed.
        """
        removed = 0
        try:
            configs = await self._store.list_configs(user_id=user_id)
            for config in configs:
                mappings: list[SyncMapping] = []
                for event_id in event_ids:
                    mapping = await self._store.get_mapping_for_event(config.id, event_id)
                    if mapping is not None:
                        mappings.append(mapping)
                if not mappings:
                    continue
                if config.direction.includes_push:
                    await self._delete_remote(config, mappings)
                for mapping in mappings:
                    await self._store.delete_mapping(mapping.id)
                    removed += 1
        except Exception:
            logger.exception("Failed to clean up sync mappings for user %s", user_id)
        return removed

    async def _delete_remote(self, config: SyncConfiguration, mappings: list[SyncMapping]) -> None:
        try:
            async with self.provider_session(config) as provider:
                for mapping in mappings:
                    try:
                        logger.info("Deleting external event %s", mapping.external_id)
                        await provider.delete_event(mapping.external_id)
                    except Exception:
                        logger.warning(
                            "Failed to delete external event %s", mapping.external_id, exc_info=True
                        )
        except Exception:
            logger.warning(
                "Could not open provider for config %s to delete events", config.id, exc_info=True
            )

    async def trigger_push_sync(self, user_id: str, event_id: str | None = None) -> None:
        """Push local changes after a CRUD operation.

        With *event_id* the targeted path runs inline; otherwise a background
        full pass is scheduled for every push configuration of the user.
        """
        try:
            if event_id is not None:
                await self.sync_specific_events(user_id, [event_id])
                return
            for config in await self._push_configs(user_id):
                self._runner.spawn(self.sync(config.id), name=f"push-sync-{config.id}")
        except Exception:
            logger.exception("Failed to trigger push sync for user %s", user_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, provider_type: str, payload: Any) -> WebhookDispatch:
        """Schedule payload processing and a full pass per matching configuration.

        Raises
        ------
        UnknownProviderError
            If *provider_type* is not a registered provider.
        """
        if not self._registry.is_registered(provider_type):
            raise UnknownProviderError(provider_type)
        configs = await self._store.list_configs(
            provider_type=ProviderType(provider_type), enabled=True
        )
        for config in configs:
            self._runner.spawn(
                self._process_webhook(config, payload), name=f"webhook-sync-{config.id}"
            )
        return WebhookDispatch(processed=True, config_ids=[config.id for config in configs])

    async def _process_webhook(self, config: SyncConfiguration, payload: Any) -> None:
        if payload:
            try:
                await self._record_webhook_payload(config, payload)
            except Exception:
                logger.warning(
                    "Failed to process webhook payload for config %s", config.id, exc_info=True
                )
        await self.sync(config.id)

    async def _record_webhook_payload(self, config: SyncConfiguration, payload: Any) -> None:
        async with self.provider_session(config) as provider:
            if not provider.supports_webhooks:
                return
            processed = await provider.process_webhook(payload)
            if processed.delivery_changes:
                stored = await self._store.record_delivery_changes(
                    config.id, processed.delivery_changes
                )
                logger.info("Recorded %d delivery event(s) for %s", stored, config.id)

    async def setup_webhook(self, config_id: str) -> WebhookSubscription | None:
        return await self.webhooks.setup_webhook(config_id)

    async def remove_webhook(self, config_id: str) -> None:
        await self.webhooks.remove_webhook(config_id)

    async def cancel_webhook(self, config_id: str) -> None:
        try:
            await self.webhooks.cancel_webhook(config_id)
        except Exception:
            logger.exception("Failed to cancel webhook for config %s", config_id)

    async def check_webhook_status(self, config_id: str) -> WebhookStatus:
        return await self.webhooks.check_webhook_status(config_id)

    async def renew_webhooks(self) -> int:
        return await self.webhooks.renew_webhooks()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_due(self, now: datetime | None = None) -> list[SyncResult]:
        """Run a pass for every enabled configuration whose next sync is due."""
        now = now or datetime.now(UTC)
        results: list[SyncResult] = []
        for config in await self._store.list_due_configs(now):
            try:
                results.append(await self.sync(config.id))
            except Exception:
                logger.exception("Scheduled sync for config %s failed", config.id)
        return results
