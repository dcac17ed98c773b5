"""In-memory implementations of the sync store and host collaborators.

They follow the constraints of the Postgres schema (one mapping per
external id and per event within a configuration, cascading deletes,
delivery-event de-duplication) so tests exercise the same rules.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Any

from eventsync.sync.store import (
    AssociatedContact,
    Contact,
    EmailAttachment,
    EventFields,
    InternalEvent,
    Location,
    ResolvedContact,
    Series,
    User,
)
from eventsync.sync.types import (
    AttendeeResponseStatus,
    DeliveryChange,
    EntityType,
    OperationStatus,
    ProviderType,
    SyncConfiguration,
    SyncMapping,
    SyncOperation,
    WebhookSubscription,
    as_utc,
)


def _delivery_key(config_id: str, change: DeliveryChange) -> tuple:
    return (config_id, change.campaign_id, change.event, change.email or "", change.occurred_at)


class InMemorySyncStore:
    def __init__(self) -> None:
        self.configs: dict[str, SyncConfiguration] = {}
        self.operations: dict[str, SyncOperation] = {}
        self.mappings: dict[str, SyncMapping] = {}
        self.subscriptions: dict[str, WebhookSubscription] = {}
        self.deliveries: list[tuple[str, DeliveryChange]] = []

    # -- configurations --

    async def create_config(self, config: SyncConfiguration) -> SyncConfiguration:
        if config.id in self.configs:
            raise ValueError(f"Sync configuration {config.id} already exists")
        now = datetime.now(UTC)
        stored = config.model_copy(
            update={"created_at": config.created_at or now, "updated_at": now}
        )
        self.configs[stored.id] = stored
        return stored

    def add_config(self, **fields: Any) -> SyncConfiguration:
        """Synchronous helper for test setup."""
        fields.setdefault("id", str(uuid.uuid4()))
        fields.setdefault("created_at", datetime.now(UTC))
        config = SyncConfiguration(**fields)
        self.configs[config.id] = config
        return config

    async def get_config(self, config_id: str) -> SyncConfiguration | None:
        return self.configs.get(config_id)

    async def list_configs(
        self,
        *,
        user_id: str | None = None,
        provider_type: ProviderType | None = None,
        enabled: bool | None = None,
    ) -> list[SyncConfiguration]:
        return [
            config
            for config in self.configs.values()
            if (user_id is None or config.user_id == user_id)
            and (provider_type is None or config.provider_type == provider_type)
            and (enabled is None or config.enabled == enabled)
        ]

    async def list_due_configs(self, now: datetime) -> list[SyncConfiguration]:
        due = [
            config
            for config in self.configs.values()
            if config.enabled and (config.next_sync_at is None or config.next_sync_at <= now)
        ]
        return sorted(due, key=lambda c: (c.next_sync_at is not None, c.next_sync_at or now))

    def _update_config(self, config_id: str, **changes: Any) -> None:
        config = self.configs.get(config_id)
        if config is None:
            return
        changes["updated_at"] = datetime.now(UTC)
        self.configs[config_id] = config.model_copy(update=changes)

    async def record_sync_times(
        self, config_id: str, *, last_sync_at: datetime, next_sync_at: datetime
    ) -> None:
        self._update_config(config_id, last_sync_at=last_sync_at, next_sync_at=next_sync_at)

    async def set_sync_token(self, config_id: str, sync_token: str | None) -> None:
        self._update_config(config_id, sync_token=sync_token)

    async def set_webhook_id(self, config_id: str, webhook_id: str | None) -> None:
        self._update_config(config_id, webhook_id=webhook_id)

    async def update_credentials(self, config_id: str, credentials: dict[str, Any]) -> None:
        self._update_config(config_id, credentials=dict(credentials))

    async def delete_config(self, config_id: str) -> None:
        self.configs.pop(config_id, None)
        for table in (self.operations, self.mappings, self.subscriptions):
            for key in [k for k, row in table.items() if row.sync_config_id == config_id]:
                del table[key]
        self.deliveries = [entry for entry in self.deliveries if entry[0] != config_id]

    # -- operations --

    async def create_operation(self, operation: SyncOperation) -> SyncOperation:
        self.operations[operation.id] = operation
        return operation

    async def finish_operation(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        error: list[dict[str, Any]] | None,
        completed_at: datetime,
    ) -> None:
        operation = self.operations[operation_id]
        self.operations[operation_id] = operation.model_copy(
            update={"status": status, "error": error, "completed_at": completed_at}
        )

    # -- mappings --

    async def get_mapping_by_external_id(
        self, config_id: str, external_id: str
    ) -> SyncMapping | None:
        for mapping in self.mappings.values():
            if mapping.sync_config_id == config_id and mapping.external_id == external_id:
                return mapping
        return None

    async def get_mapping_for_event(self, config_id: str, event_id: str) -> SyncMapping | None:
        for mapping in self.mappings.values():
            if mapping.sync_config_id == config_id and mapping.event_id == event_id:
                return mapping
        return None

    async def list_mappings(self, config_id: str) -> list[SyncMapping]:
        return [m for m in self.mappings.values() if m.sync_config_id == config_id]

    async def upsert_event_mapping(
        self,
        *,
        config_id: str,
        event_id: str,
        external_id: str,
        provider_id: str,
        etag: str | None,
        last_synced_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SyncMapping:
        for key, mapping in list(self.mappings.items()):
            if (
                mapping.sync_config_id == config_id
                and mapping.event_id == event_id
                and mapping.external_id != external_id
            ):
                del self.mappings[key]

        existing = await self.get_mapping_by_external_id(config_id, external_id)
        mapping = SyncMapping(
            id=existing.id if existing is not None else str(uuid.uuid4()),
            sync_config_id=config_id,
            external_id=external_id,
            provider_id=provider_id,
            event_id=event_id,
            etag=etag,
            last_synced_at=last_synced_at,
            metadata=metadata or (existing.metadata if existing is not None else {}),
        )
        self.mappings[mapping.id] = mapping
        return mapping

    async def touch_mapping(
        self, mapping_id: str, *, etag: str | None, last_synced_at: datetime
    ) -> None:
        mapping = self.mappings.get(mapping_id)
        if mapping is not None:
            self.mappings[mapping_id] = mapping.model_copy(
                update={"etag": etag, "last_synced_at": last_synced_at}
            )

    async def delete_mapping(self, mapping_id: str) -> None:
        self.mappings.pop(mapping_id, None)

    async def delete_event_mappings(self, event_id: str) -> int:
        doomed = [key for key, m in self.mappings.items() if m.event_id == event_id]
        for key in doomed:
            del self.mappings[key]
        return len(doomed)

    async def list_event_mappings(self, event_id: str) -> list[SyncMapping]:
        return [m for m in self.mappings.values() if m.event_id == event_id]

    # -- webhook subscriptions --

    async def list_webhook_subscriptions(self, config_id: str) -> list[WebhookSubscription]:
        rows = [s for s in self.subscriptions.values() if s.sync_config_id == config_id]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)

    async def list_expiring_subscriptions(self, before: datetime) -> list[WebhookSubscription]:
        rows = [s for s in self.subscriptions.values() if s.expires_at < before]
        return sorted(rows, key=lambda s: s.expires_at)

    async def create_webhook_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def delete_webhook_subscription(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)

    async def replace_webhook_subscription(
        self, old_id: str, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        previous = self.subscriptions.pop(old_id, None)
        try:
            await self.create_webhook_subscription(subscription)
        except Exception:
            if previous is not None:
                self.subscriptions[old_id] = previous
            raise
        await self.set_webhook_id(subscription.sync_config_id, subscription.id)
        return subscription

    # -- delivery tracking --

    async def record_delivery_changes(
        self, config_id: str, changes: list[DeliveryChange]
    ) -> int:
        seen = {_delivery_key(cfg, change) for cfg, change in self.deliveries}
        inserted = 0
        for change in changes:
            key = _delivery_key(config_id, change)
            if key in seen:
                continue
            seen.add(key)
            self.deliveries.append((config_id, change))
            inserted += 1
        return inserted


class InMemoryEventStore:
    def __init__(self) -> None:
        self.events: dict[str, InternalEvent] = {}
        self.locations: dict[str, Location] = {}
        self.series: dict[str, Series] = {}
        self.deleted: list[str] = []

    def add_event(self, **fields: Any) -> InternalEvent:
        """Seed an event; ``created_at`` and ``updated_at`` default to now."""
        now = datetime.now(UTC)
        fields.setdefault("id", str(uuid.uuid4()))
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", fields["created_at"])
        event = InternalEvent(**fields)
        self.events[event.id] = event
        return event

    def set_updated_at(self, event_id: str, updated_at: datetime) -> InternalEvent:
        """Simulate a local edit (or its absence) at *updated_at*."""
        event = self.events[event_id].model_copy(update={"updated_at": updated_at})
        self.events[event_id] = event
        return event

    async def get_event(self, event_id: str) -> InternalEvent | None:
        return self.events.get(event_id)

    async def list_user_events(self, user_id: str) -> list[InternalEvent]:
        return [e for e in self.events.values() if e.user_id == user_id]

    async def find_events_by_summary(self, summary: str) -> list[InternalEvent]:
        return [e for e in self.events.values() if e.summary == summary]

    async def find_events_starting_between(
        self, start: datetime, end: datetime
    ) -> list[InternalEvent]:
        return [
            e
            for e in self.events.values()
            if e.start_datetime is not None and start <= as_utc(e.start_datetime) <= end
        ]

    async def find_events_on_date(self, day: date) -> list[InternalEvent]:
        return [
            e
            for e in self.events.values()
            if e.start_date == day
            or (e.start_datetime is not None and as_utc(e.start_datetime).date() == day)
        ]

    async def create_event(self, fields: EventFields) -> InternalEvent:
        now = datetime.now(UTC)
        event = InternalEvent(
            **fields.model_dump(), id=str(uuid.uuid4()), created_at=now, updated_at=now
        )
        self.events[event.id] = event
        return event

    async def update_event(self, event_id: str, fields: EventFields) -> InternalEvent:
        current = self.events.get(event_id)
        if current is None:
            raise KeyError(event_id)
        event = current.model_copy(
            update={**fields.model_dump(), "updated_at": datetime.now(UTC)}
        )
        self.events[event_id] = event
        return event

    async def delete_event(self, event_id: str) -> None:
        if self.events.pop(event_id, None) is not None:
            self.deleted.append(event_id)

    async def get_location(self, location_id: str) -> Location | None:
        return self.locations.get(location_id)

    async def get_series(self, series_id: str) -> Series | None:
        return self.series.get(series_id)


class InMemoryContactDirectory:
    def __init__(self) -> None:
        self.contacts: dict[str, Contact] = {}
        self.associations: dict[tuple[str, str], list[str]] = {}
        self.statuses: dict[tuple[str, str], AttendeeResponseStatus] = {}
        self.primary: dict[str, ResolvedContact] = {}

    def add_contact(self, contact: Contact, *, event_ids: tuple[str, ...] = ()) -> Contact:
        self.contacts[contact.id] = contact
        for event_id in event_ids:
            self.associations.setdefault((str(EntityType.EVENT), event_id), []).append(contact.id)
        return contact

    async def list_associated_contacts(
        self, entity_type: str, entity_id: str
    ) -> list[AssociatedContact]:
        ids = self.associations.get((str(entity_type), entity_id), [])
        return [
            AssociatedContact(
                contact=self.contacts[contact_id],
                participation_status=self.statuses.get((entity_id, contact_id)),
            )
            for contact_id in ids
            if contact_id in self.contacts
        ]

    async def find_contacts_by_email(self, email: str) -> list[Contact]:
        wanted = email.strip().lower()
        return [
            contact
            for contact in self.contacts.values()
            if any(entry.value.lower() == wanted for entry in contact.emails)
        ]

    async def resolve_primary_contact(self, event_id: str) -> ResolvedContact | None:
        return self.primary.get(event_id)

    async def set_participation_status(
        self, event_id: str, contact_id: str, status: AttendeeResponseStatus
    ) -> None:
        self.statuses[(event_id, contact_id)] = status


class InMemoryUserDirectory:
    def __init__(self, users: list[User] | None = None) -> None:
        self.users: dict[str, User] = {user.id: user for user in users or []}

    async def get_user(self, user_id: str) -> User | None:
        return self.users.get(user_id)

    async def find_user_by_email(self, email: str) -> User | None:
        wanted = email.strip().lower()
        for user in self.users.values():
            if user.email.lower() == wanted:
                return user
        return None


_ICS_STUB = "QkVHSU46VkNBTEVOREFS"  # base64 "BEGIN:VCALENDAR"


class InMemoryAssetProvider:
    def __init__(self, base_url: str = "https://assets.example.org") -> None:
        self.base_url = base_url.rstrip("/")

    async def calendar_file_url(self, event_id: str) -> str | None:
        return f"{self.base_url}/events/{event_id}.ics"

    async def qr_code_url(self, event_id: str) -> str | None:
        return f"{self.base_url}/events/{event_id}/qr.png"

    async def email_attachments(
        self, event_id: str, *, include_ics: bool, include_qr: bool
    ) -> list[EmailAttachment]:
        attachments: list[EmailAttachment] = []
        if include_ics:
            attachments.append(EmailAttachment(name=f"{event_id}.ics", content=_ICS_STUB))
        if include_qr:
            attachments.append(EmailAttachment(name=f"{event_id}-qr.png", content="iVBORw0KGgo="))
        return attachments


class RecordingPublisher:
    """Collects ``publish`` calls as ``(entity_type, kind, ids)`` tuples."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, list[str]]] = []

    def publish(self, entity_type: EntityType, kind: str, ids: list[str]) -> None:
        self.messages.append((str(entity_type), str(kind), list(ids)))
