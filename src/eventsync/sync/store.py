"""Persistence and collaborator interfaces consumed by the sync engine.

``SyncStore`` owns the sync bookkeeping tables (configurations, operations,
mappings, webhook subscriptions, delivery events).  Everything else
(events, contacts, users, generated assets) belongs to the host
application and is reached through the narrow protocols below.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from eventsync.sync.types import (
    AttendeeResponseStatus,
    DeliveryChange,
    EntityType,
    EventStatus,
    ExternalReminders,
    OperationStatus,
    ProviderType,
    SyncConfiguration,
    SyncMapping,
    SyncOperation,
    WebhookSubscription,
)

_EMPLOYEE_TAGS = frozenset({"employee", "employees"})


# ---------------------------------------------------------------------------
# Host records
# ---------------------------------------------------------------------------


class EventFields(BaseModel):
    """Writable fields of an internal event."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    summary: str
    description: str | None = None
    location: str | None = None
    start_date: date | None = None
    start_datetime: datetime | None = None
    start_timezone: str | None = None
    end_date: date | None = None
    end_datetime: datetime | None = None
    end_timezone: str | None = None
    status: EventStatus | None = None
    recurrence: list[str] = Field(default_factory=list)
    reminders: ExternalReminders | None = None
    ticket_price: str | None = None
    source_url: str | None = None


class InternalEvent(EventFields):
    """An event row of the host application."""

    id: str
    location_id: str | None = None
    series_id: str | None = None
    image_url: str | None = None
    image_title: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ContactValue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str
    primary: bool = False
    type: str | None = None


class Contact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    emails: list[ContactValue] = Field(default_factory=list)
    phones: list[ContactValue] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        return f"{self.given_name or ''} {self.family_name or ''}".strip()

    @property
    def primary_email(self) -> str | None:
        return _primary_value(self.emails)

    @property
    def primary_phone(self) -> str | None:
        return _primary_value(self.phones)

    @property
    def is_employee(self) -> bool:
        return any(tag.strip().lower() in _EMPLOYEE_TAGS for tag in self.tags)


def _primary_value(values: list[ContactValue]) -> str | None:
    for entry in values:
        if entry.primary:
            return entry.value
    return values[0].value if values else None


class AssociatedContact(BaseModel):
    """A contact linked to an entity, with its participation status for events."""

    model_config = ConfigDict(extra="forbid")

    contact: Contact
    participation_status: AttendeeResponseStatus | None = None


class ResolvedContact(BaseModel):
    """The contact an outside party should reach for an event."""

    model_config = ConfigDict(extra="forbid")

    name: str
    email: str | None = None
    phone: str | None = None


class Location(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    street: str | None = None
    house_number: str | None = None
    city: str | None = None
    country: str | None = None
    zip: str | None = None
    state: str | None = None
    phone: str | None = None
    website: str | None = None


class Series(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    rrule: str | None = None


class User(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    email: str


class EmailAttachment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    content: str  # base64


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class SyncStore(Protocol):
    """Sync bookkeeping persistence."""

    # -- configurations --
    async def create_config(self, config: SyncConfiguration) -> SyncConfiguration: ...

    async def get_config(self, config_id: str) -> SyncConfiguration | None: ...

    async def list_configs(
        self,
        *,
        user_id: str | None = None,
        provider_type: ProviderType | None = None,
        enabled: bool | None = None,
    ) -> list[SyncConfiguration]: ...

    async def list_due_configs(self, now: datetime) -> list[SyncConfiguration]: ...

    async def record_sync_times(
        self, config_id: str, *, last_sync_at: datetime, next_sync_at: datetime
    ) -> None: ...

    async def set_sync_token(self, config_id: str, sync_token: str | None) -> None: ...

    async def set_webhook_id(self, config_id: str, webhook_id: str | None) -> None: ...

    async def update_credentials(self, config_id: str, credentials: dict[str, Any]) -> None: ...

    async def delete_config(self, config_id: str) -> None: ...

    # -- operations --
    async def create_operation(self, operation: SyncOperation) -> SyncOperation: ...

    async def finish_operation(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        error: list[dict[str, Any]] | None,
        completed_at: datetime,
    ) -> None: ...

    # -- mappings --
    async def get_mapping_by_external_id(
        self, config_id: str, external_id: str
    ) -> SyncMapping | None: ...

    async def get_mapping_for_event(self, config_id: str, event_id: str) -> SyncMapping | None: ...

    async def list_mappings(self, config_id: str) -> list[SyncMapping]: ...

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
    ) -> SyncMapping: ...

    async def touch_mapping(
        self, mapping_id: str, *, etag: str | None, last_synced_at: datetime
    ) -> None: ...

    async def delete_mapping(self, mapping_id: str) -> None: ...

    async def delete_event_mappings(self, event_id: str) -> int: ...

    async def list_event_mappings(self, event_id: str) -> list[SyncMapping]: ...

    # -- webhook subscriptions --
    async def list_webhook_subscriptions(self, config_id: str) -> list[WebhookSubscription]: ...

    async def list_expiring_subscriptions(self, before: datetime) -> list[WebhookSubscription]: ...

    async def create_webhook_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription: ...

    async def delete_webhook_subscription(self, subscription_id: str) -> None: ...

    async def replace_webhook_subscription(
        self, old_id: str, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        """Swap *old_id* for *subscription* and point the config's webhook id at it.

        All or nothing: if the insert fails the old record is kept.
        """
        ...

    # -- delivery tracking --
    async def record_delivery_changes(
        self, config_id: str, changes: list[DeliveryChange]
    ) -> int: ...


class EventStore(Protocol):
    """The host application's event table."""

    async def get_event(self, event_id: str) -> InternalEvent | None: ...

    async def list_user_events(self, user_id: str) -> list[InternalEvent]: ...

    async def find_events_by_summary(self, summary: str) -> list[InternalEvent]: ...

    async def find_events_starting_between(
        self, start: datetime, end: datetime
    ) -> list[InternalEvent]: ...

    async def find_events_on_date(self, day: date) -> list[InternalEvent]: ...

    async def create_event(self, fields: EventFields) -> InternalEvent: ...

    async def update_event(self, event_id: str, fields: EventFields) -> InternalEvent: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def get_location(self, location_id: str) -> Location | None: ...

    async def get_series(self, series_id: str) -> Series | None: ...


class ContactDirectory(Protocol):
    """Contact resolution and event/contact associations."""

    async def list_associated_contacts(
        self, entity_type: str, entity_id: str
    ) -> list[AssociatedContact]: ...

    async def find_contacts_by_email(self, email: str) -> list[Contact]: ...

    async def resolve_primary_contact(self, event_id: str) -> ResolvedContact | None: ...

    async def set_participation_status(
        self, event_id: str, contact_id: str, status: AttendeeResponseStatus
    ) -> None: ...


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> User | None: ...

    async def find_user_by_email(self, email: str) -> User | None: ...


class AssetProvider(Protocol):
    """Generated artifacts (calendar files, QR codes) for an event."""

    async def calendar_file_url(self, event_id: str) -> str | None: ...

    async def qr_code_url(self, event_id: str) -> str | None: ...

    async def email_attachments(
        self, event_id: str, *, include_ics: bool, include_qr: bool
    ) -> list[EmailAttachment]: ...


class ChangePublisher(Protocol):
    """Realtime change notifications."""

    def publish(self, entity_type: EntityType, kind: str, ids: list[str]) -> None: ...
