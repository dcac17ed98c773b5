"""Translation between host events and the provider-agnostic ``ExternalEvent``."""

from __future__ import annotations

import logging

from eventsync.sync.store import (
    ContactDirectory,
    EventFields,
    EventStore,
    InternalEvent,
    Location,
    UserDirectory,
)
from eventsync.sync.types import (
    AttendeeResponseStatus,
    EntityType,
    ExternalAttendee,
    ExternalEvent,
    ExternalImage,
    ExternalOrganizer,
    ExternalVenue,
    ProviderType,
)

logger = logging.getLogger(__name__)


def venue_from_location(location: Location) -> ExternalVenue:
    address = None
    if location.street:
        address = f"{location.street} {location.house_number or ''}".strip()
    return ExternalVenue(
        name=location.name,
        address=address,
        city=location.city,
        country=location.country,
        province=location.state,
        zip=location.zip,
        phone=location.phone,
        website=location.website,
    )


def split_rrule(rrule: str) -> list[str]:
    """Split a stored series rule into RFC 5545 content lines."""
    return [line.strip() for line in rrule.splitlines() if line.strip()]


class EventMapper:
    """Builds outbound ``ExternalEvent`` payloads and inbound event fields.

    Contacts tagged as employees never appear as attendees; the first of them
    becomes the organizer.
    """

    def __init__(
        self, events: EventStore, contacts: ContactDirectory, users: UserDirectory
    ) -> None:
        self._events = events
        self._contacts = contacts
        self._users = users

    async def internal_to_external(
        self, event: InternalEvent, provider_type: ProviderType | str
    ) -> ExternalEvent:
        associated = await self._contacts.list_associated_contacts(EntityType.EVENT, event.id)

        attendees: list[ExternalAttendee] = []
        organizer: ExternalOrganizer | None = None
        for entry in associated:
            contact = entry.contact
            if contact.is_employee:
                if organizer is None:
                    organizer = ExternalOrganizer(
                        name=contact.name or contact.primary_email or contact.id,
                        email=contact.primary_email,
                        phone=contact.primary_phone,
                    )
                continue
            email = contact.primary_email
            if not email:
                continue
            attendees.append(
                ExternalAttendee(
                    email=email,
                    display_name=contact.name or None,
                    response_status=entry.participation_status
                    or AttendeeResponseStatus.NEEDS_ACTION,
                )
            )

        venue: ExternalVenue | None = None
        if event.location:
            location = (
                await self._events.get_location(event.location_id) if event.location_id else None
            )
            venue = (
                venue_from_location(location) if location else ExternalVenue(name=event.location)
            )

        recurrence = list(event.recurrence)
        if event.series_id:
            series = await self._events.get_series(event.series_id)
            if series is not None and series.rrule:
                recurrence = split_rrule(series.rrule)

        metadata: dict[str, str] = {
            "app_event_id": event.id,
            "event_id": event.id,
            "entity_type": EntityType.EVENT.value,
        }
        if event.series_id:
            metadata["series_id"] = event.series_id

        return ExternalEvent(
            provider_id=str(provider_type),
            summary=event.summary,
            description=event.description,
            location=event.location,
            venue=venue,
            start_date=event.start_date,
            start_datetime=event.start_datetime,
            start_timezone=event.start_timezone,
            end_date=event.end_date,
            end_datetime=event.end_datetime,
            end_timezone=event.end_timezone,
            status=event.status,
            recurrence=recurrence,
            attendees=attendees,
            reminders=event.reminders,
            organizer=organizer,
            image=ExternalImage(url=event.image_url, title=event.image_title)
            if event.image_url
            else None,
            tags=list(event.tags),
            ticket_price=event.ticket_price,
            metadata=metadata,
            source_url=event.source_url,
        )

    async def resolve_owner(self, external: ExternalEvent, default_user_id: str) -> str:
        """Owner of an inbound event: a user whose email matches the resolved contact."""
        email: str | None = None
        event_id = external.app_event_id or external.metadata.get("event_id")
        if isinstance(event_id, str) and event_id:
            resolved = await self._contacts.resolve_primary_contact(event_id)
            if resolved is not None:
                email = resolved.email
        if email is None and external.organizer is not None:
            email = external.organizer.email
        if email:
            user = await self._users.find_user_by_email(email)
            if user is not None:
                return user.id
        return default_user_id

    async def external_to_internal(
        self, external: ExternalEvent, default_user_id: str
    ) -> EventFields:
        owner_id = await self.resolve_owner(external, default_user_id)
        return EventFields(
            user_id=owner_id,
            summary=external.summary,
            description=external.description,
            location=external.location or (external.venue.name if external.venue else None),
            start_date=external.start_date,
            start_datetime=external.start_datetime,
            start_timezone=external.start_timezone,
            end_date=external.end_date,
            end_datetime=external.end_datetime,
            end_timezone=external.end_timezone,
            status=external.status,
            recurrence=list(external.recurrence),
            reminders=external.reminders,
            ticket_price=external.ticket_price,
            source_url=external.source_url,
        )
