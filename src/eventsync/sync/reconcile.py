"""Reconciliation of pulled events against the internal event store.

Each pulled ``ExternalEvent`` is resolved by the first rule that applies:

1. cancellation of a mapped event deletes it locally;
2. an existing mapping overwrites the local event, unless it was edited
   locally within the echo guard window;
3. an embedded ``app_event_id`` heals the mapping, or is ignored when the
   local event no longer exists so deleted events are not resurrected;
4. a fuzzy match on summary or start time heals the mapping;
5. otherwise a new local event is created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from eventsync.config import SyncTuning
from eventsync.sync.errors import ProviderDataError
from eventsync.sync.mapping import EventMapper
from eventsync.sync.store import (
    ChangePublisher,
    ContactDirectory,
    EventStore,
    InternalEvent,
    SyncStore,
)
from eventsync.sync.types import (
    ChangeKind,
    EntityType,
    ExternalAttendee,
    ExternalEvent,
    SyncConfiguration,
    as_utc,
)

logger = logging.getLogger(__name__)


class ReconcileAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MATCHED = "matched"
    TOUCHED = "touched"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileOutcome:
    action: ReconcileAction
    event_id: str | None = None


def _synced_at(now: datetime, event: InternalEvent) -> datetime:
    """Sync stamp no older than the local write, so the push phase skips it."""
    return max(now, as_utc(event.updated_at))


def starts_match(candidate: InternalEvent, external: ExternalEvent) -> bool:
    """Whether a local candidate starts when the pulled event does.

    Mixed all-day/timed pairs compare the UTC calendar date of the timed side
    with the all-day date; the timed event's own timezone is not consulted.
    """
    if candidate.start_date is not None and external.start_date is not None:
        return candidate.start_date == external.start_date
    if candidate.start_datetime is not None and external.start_datetime is not None:
        delta = as_utc(candidate.start_datetime) - as_utc(external.start_datetime)
        return abs(delta.total_seconds()) < 1
    if candidate.start_datetime is not None and external.start_date is not None:
        return as_utc(candidate.start_datetime).date() == external.start_date
    if candidate.start_date is not None and external.start_datetime is not None:
        return candidate.start_date == as_utc(external.start_datetime).date()
    return False


class Reconciler:
    """Applies one pulled event to the local store for one configuration."""

    def __init__(
        self,
        store: SyncStore,
        events: EventStore,
        contacts: ContactDirectory,
        mapper: EventMapper,
        *,
        publisher: ChangePublisher | None = None,
        tuning: SyncTuning | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._contacts = contacts
        self._mapper = mapper
        self._publisher = publisher
        self._tuning = tuning or SyncTuning()

    def _publish(self, kind: ChangeKind, event_id: str) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.publish(EntityType.EVENT, kind, [event_id])
        except Exception:
            logger.warning("Failed to publish %s for event %s", kind, event_id, exc_info=True)

    async def reconcile(
        self, config: SyncConfiguration, external: ExternalEvent
    ) -> ReconcileOutcome:
        external_id = external.external_id
        if not external_id:
            raise ProviderDataError(f"Pulled event {external.summary!r} has no external id")

        now = datetime.now(UTC)
        mapping = await self._store.get_mapping_by_external_id(config.id, external_id)

        if external.is_cancelled:
            if mapping is None or mapping.event_id is None:
                return ReconcileOutcome(ReconcileAction.IGNORED)
            await self._events.delete_event(mapping.event_id)
            await self._store.delete_mapping(mapping.id)
            self._publish(ChangeKind.DELETE, mapping.event_id)
            logger.info(
                "Deleted event %s after remote cancellation of %s", mapping.event_id, external_id
            )
            return ReconcileOutcome(ReconcileAction.DELETED, mapping.event_id)

        if mapping is not None:
            if mapping.event_id is None:
                return ReconcileOutcome(ReconcileAction.IGNORED)
            current = await self._events.get_event(mapping.event_id)
            if current is None:
                logger.info(
                    "Mapping %s points at missing event %s; dropping it",
                    mapping.id,
                    mapping.event_id,
                )
                await self._store.delete_mapping(mapping.id)
                return ReconcileOutcome(ReconcileAction.IGNORED)

            echo_guard = timedelta(seconds=self._tuning.echo_guard_seconds)
            if now - as_utc(current.updated_at) < echo_guard:
                await self._store.touch_mapping(
                    mapping.id, etag=external.etag, last_synced_at=now
                )
                return ReconcileOutcome(ReconcileAction.TOUCHED, current.id)

            fields = await self._mapper.external_to_internal(external, config.user_id)
            fields = fields.model_copy(update={"user_id": current.user_id})
            updated = await self._events.update_event(current.id, fields)
            await self._store.touch_mapping(
                mapping.id, etag=external.etag, last_synced_at=_synced_at(now, updated)
            )
            self._publish(ChangeKind.UPDATE, current.id)
            await self._apply_attendee_statuses(current.id, external.attendees)
            return ReconcileOutcome(ReconcileAction.UPDATED, current.id)

        app_event_id = external.app_event_id
        if app_event_id is not None:
            echoed = await self._events.get_event(app_event_id)
            if echoed is None:
                logger.info(
                    "Ignoring echo of deleted event %s (external %s)", app_event_id, external_id
                )
                return ReconcileOutcome(ReconcileAction.IGNORED)
            logger.info("Identified echo of event %s via metadata; healing mapping", echoed.id)
            await self._link(config, echoed.id, external, now)
            return ReconcileOutcome(ReconcileAction.MATCHED, echoed.id)

        for candidate in await self._fuzzy_candidates(external):
            if starts_match(candidate, external):
                logger.info(
                    "Fuzzy match of external %s to event %s; healing mapping",
                    external_id,
                    candidate.id,
                )
                await self._link(config, candidate.id, external, now)
                return ReconcileOutcome(ReconcileAction.MATCHED, candidate.id)

        fields = await self._mapper.external_to_internal(external, config.user_id)
        created = await self._events.create_event(fields)
        await self._link(config, created.id, external, _synced_at(now, created))
        self._publish(ChangeKind.CREATE, created.id)
        await self._apply_attendee_statuses(created.id, external.attendees)
        return ReconcileOutcome(ReconcileAction.CREATED, created.id)

    async def _link(
        self, config: SyncConfiguration, event_id: str, external: ExternalEvent, now: datetime
    ) -> None:
        assert external.external_id is not None
        await self._store.upsert_event_mapping(
            config_id=config.id,
            event_id=event_id,
            external_id=external.external_id,
            provider_id=config.provider_id,
            etag=external.etag,
            last_synced_at=now,
        )

    async def _fuzzy_candidates(self, external: ExternalEvent) -> list[InternalEvent]:
        """Summary matches first, then events starting inside the fuzzy window."""
        candidates: list[InternalEvent] = []
        seen: set[str] = set()

        def _add(events: list[InternalEvent]) -> None:
            for event in events:
                if event.id not in seen:
                    seen.add(event.id)
                    candidates.append(event)

        _add(await self._events.find_events_by_summary(external.summary))
        if external.start_datetime is not None:
            window = timedelta(seconds=self._tuning.fuzzy_match_window_seconds)
            start = as_utc(external.start_datetime)
            _add(await self._events.find_events_starting_between(start - window, start + window))
        elif external.start_date is not None:
            _add(await self._events.find_events_on_date(external.start_date))
        return candidates

    async def _apply_attendee_statuses(
        self, event_id: str, attendees: list[ExternalAttendee]
    ) -> None:
        for attendee in attendees:
            matches = await self._contacts.find_contacts_by_email(attendee.email)
            if not matches:
                continue
            await self._contacts.set_participation_status(
                event_id, matches[0].id, attendee.response_status
            )
