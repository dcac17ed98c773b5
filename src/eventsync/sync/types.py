"""Core value types shared by the orchestrator, mapping layer and adapters."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def as_utc(value: datetime) -> datetime:
    """*value* in UTC; naive datetimes are taken to already be UTC."""
    return value.astimezone(UTC) if value.tzinfo is not None else value.replace(tzinfo=UTC)


class ProviderType(StrEnum):
    """Tag selecting the adapter implementation for a configuration."""

    GOOGLE_CALENDAR = "google-calendar"
    EMAIL = "email"
    EVENTBRITE = "eventbrite"
    MEETUP = "meetup"
    WP_THE_EVENTS_CALENDAR = "wp-the-events-calendar"
    BERLIN_DE_MAIN_CALENDAR = "berlin-de-main-calendar"
    BERLIN_DE_MH_CALENDAR = "berlin-de-mh-calendar"
    SENIORENNETZ_BERLIN = "seniorennetz-berlin"
    BEWEGUNGSATLAS_BERLIN = "bewegungsatlas-berlin"


class SyncDirection(StrEnum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"

    @property
    def includes_pull(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)

    @property
    def includes_push(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)


class EntityType(StrEnum):
    EVENT = "event"
    ANNOUNCEMENT = "announcement"


class OperationKind(StrEnum):
    PULL = "pull"
    PUSH = "push"
    SYNC = "sync"

    @classmethod
    def for_direction(cls, direction: SyncDirection) -> OperationKind:
        if direction is SyncDirection.PULL:
            return cls.PULL
        if direction is SyncDirection.PUSH:
            return cls.PUSH
        return cls.SYNC


class OperationStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeKind(StrEnum):
    """Realtime change notification kinds."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AttendeeResponseStatus(StrEnum):
    NEEDS_ACTION = "needsAction"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"

    @classmethod
    def parse(cls, value: Any) -> AttendeeResponseStatus:
        """Parse a provider response status, defaulting to ``needsAction``."""
        if isinstance(value, str):
            try:
                return cls(value.strip())
            except ValueError:
                pass
        return cls.NEEDS_ACTION


# ---------------------------------------------------------------------------
# ExternalEvent: the provider-agnostic DTO
# ---------------------------------------------------------------------------


class ExternalAttendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.NEEDS_ACTION

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("attendee email must be non-empty")
        return normalized


class ReminderOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: str = "popup"
    minutes: int = Field(ge=0)


class ExternalReminders(BaseModel):
    model_config = ConfigDict(extra="forbid")

    use_default: bool = True
    overrides: list[ReminderOverride] = Field(default_factory=list)


class ExternalVenue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    address: str | None = None
    city: str | None = None
    country: str | None = None
    province: str | None = None
    zip: str | None = None
    phone: str | None = None
    website: str | None = None


class ExternalOrganizer(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    email: str | None = None
    phone: str | None = None
    website: str | None = None


class ExternalImage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    title: str | None = None


class ExternalEvent(BaseModel):
    """An event as exchanged with a provider adapter.

    Exactly one of ``start_date`` (all-day) and ``start_datetime`` (timed) is
    expected to be set.  Timed boundaries are timezone-aware; naive values are
    interpreted as UTC.
    """

    model_config = ConfigDict(extra="forbid")

    external_id: str | None = None
    provider_id: str | None = None
    summary: str
    description: str | None = None
    location: str | None = None
    venue: ExternalVenue | None = None
    start_date: date | None = None
    start_datetime: datetime | None = None
    start_timezone: str | None = None
    end_date: date | None = None
    end_datetime: datetime | None = None
    end_timezone: str | None = None
    status: EventStatus | None = None
    recurrence: list[str] = Field(default_factory=list)
    attendees: list[ExternalAttendee] = Field(default_factory=list)
    reminders: ExternalReminders | None = None
    organizer: ExternalOrganizer | None = None
    image: ExternalImage | None = None
    tags: list[str] = Field(default_factory=list)
    ticket_price: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_url: str | None = None
    etag: str | None = None
    updated: datetime | None = None

    @field_validator("start_datetime", "end_datetime", "updated")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @property
    def is_all_day(self) -> bool:
        return self.start_datetime is None and self.start_date is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status is EventStatus.CANCELLED

    @property
    def app_event_id(self) -> str | None:
        """Internal event id echoed back by the provider, if any."""
        value = self.metadata.get("app_event_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


# ---------------------------------------------------------------------------
# Configuration and bookkeeping records
# ---------------------------------------------------------------------------


class SyncConfiguration(BaseModel):
    """One user's connection to one external provider."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    provider_id: str
    provider_type: ProviderType
    direction: SyncDirection
    enabled: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    sync_token: str | None = None
    webhook_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncErrorEntry(BaseModel):
    """One error collected during a pass; serialized into the operation record."""

    model_config = ConfigDict(extra="forbid")

    phase: str
    message: str
    entity_id: str | None = None
    external_id: str | None = None
    error_type: str | None = None


class SyncOperation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    sync_config_id: str
    operation: OperationKind
    status: OperationStatus = OperationStatus.PENDING
    entity_type: EntityType = EntityType.EVENT
    entity_id: str | None = None
    external_id: str | None = None
    error: list[dict[str, Any]] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    retry_count: int = 0


class SyncMapping(BaseModel):
    """Link between one internal entity and one external record."""

    model_config = ConfigDict(extra="forbid")

    id: str
    sync_config_id: str
    external_id: str
    provider_id: str
    event_id: str | None = None
    announcement_id: str | None = None
    location_id: str | None = None
    contact_id: str | None = None
    tag_id: str | None = None
    last_synced_at: datetime
    etag: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_entity(self) -> SyncMapping:
        refs = [
            self.event_id,
            self.announcement_id,
            self.location_id,
            self.contact_id,
            self.tag_id,
        ]
        if sum(1 for ref in refs if ref is not None) != 1:
            raise ValueError("a sync mapping must reference exactly one internal entity")
        return self


class WebhookSubscription(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    sync_config_id: str
    provider_id: str
    resource_id: str
    channel_id: str | None = None
    expires_at: datetime
    created_at: datetime


# ---------------------------------------------------------------------------
# Adapter results
# ---------------------------------------------------------------------------


class PullResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[ExternalEvent] = Field(default_factory=list)
    next_sync_token: str | None = None


class PushResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_id: str
    etag: str | None = None


class UpdateResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    etag: str | None = None


class WebhookRegistration(BaseModel):
    """What an adapter returns after registering a push-notification channel."""

    model_config = ConfigDict(extra="forbid")

    resource_id: str
    channel_id: str | None = None
    expires_at: datetime


class DeliveryChange(BaseModel):
    """A delivery-tracking event reported by an outbound email provider."""

    model_config = ConfigDict(extra="forbid")

    campaign_id: str
    event: str
    email: str | None = None
    occurred_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookProcessResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delivery_changes: list[DeliveryChange] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of one sync pass."""

    model_config = ConfigDict(extra="forbid")

    config_id: str
    operation_id: str | None = None
    success: bool = True
    events_pulled: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_matched: int = 0
    events_pushed: int = 0
    errors: list[SyncErrorEntry] = Field(default_factory=list)


class WebhookStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    active: bool
    expires_at: datetime | None = None


class WebhookDispatch(BaseModel):
    """Acknowledgement of an inbound webhook; the sync work runs in the background."""

    model_config = ConfigDict(extra="forbid")

    processed: bool
    config_ids: list[str] = Field(default_factory=list)
