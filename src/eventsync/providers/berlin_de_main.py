"""berlin.de main calendar: submissions through the public event form.

The form accepts new entries only.  It returns no identifier, so the adapter
mints one locally; updates submit the event again and deletes are ignored.
"""

from __future__ import annotations

import logging
import uuid

from eventsync.providers.base import SyncProvider
from eventsync.providers.forms import FORM_HEADERS, local_end, local_start, resolve_submitter
from eventsync.sync.errors import ProviderDataError
from eventsync.sync.types import ExternalEvent, ProviderType, PushResult, UpdateResult

logger = logging.getLogger(__name__)

BERLIN_DE_FORM_URL = "https://www.berlin.de/tickets/6226271-2789889-datenerfassung.html"


class BerlinDeMainCalendarProvider(SyncProvider):
    provider_type = ProviderType.BERLIN_DE_MAIN_CALENDAR

    @property
    def name(self) -> str:
        return "Berlin.de (Main Calendar)"

    @property
    def form_url(self) -> str:
        return self.settings.form_url or BERLIN_DE_FORM_URL

    async def build_form(self, event: ExternalEvent) -> dict[str, str]:
        start_day, start_time = local_start(event)
        if start_day is None:
            raise ProviderDataError(f"Event {event.summary!r} has no start date or time")
        end_day, _ = local_end(event)

        form: dict[str, str] = {
            "summary": event.summary,
            "startDate": start_day.strftime("%m/%d/%Y"),
        }
        if start_time is not None:
            form["startTime"] = start_time
        if event.description:
            form["description"] = event.description
        if event.location:
            form["location"] = event.location

        category = self.settings.category or event.metadata.get("category_berlin_de")
        if category:
            form["category"] = str(category)

        if end_day is not None and end_day != start_day:
            until = f"bis {end_day:%d.%m.%Y}"
            form["additionalDates"] = f"{until}, wiederholend" if event.recurrence else until
        elif event.recurrence:
            form["additionalDates"] = "Wiederholendes Event"

        if event.ticket_price:
            form["ticketPrice"] = event.ticket_price

        contact = await resolve_submitter(
            self._context,
            self.config,
            event,
            name=self.settings.submitter_name,
            email=self.settings.submitter_email,
        )
        form["userName"] = contact.name
        if contact.email:
            form["userEmail"] = contact.email
        if contact.phone:
            form["userPhone"] = contact.phone
        if self.settings.company:
            form["company"] = self.settings.company
        if event.app_event_id:
            form["eventId"] = event.app_event_id
        return form

    async def push_event(self, event: ExternalEvent) -> PushResult:
        form = await self.build_form(event)
        response = await self._send("push", "POST", self.form_url, data=form, headers=FORM_HEADERS)
        self._raise_for_status(response, "push")
        external_id = f"berlin-de-{uuid.uuid4()}"
        logger.info("Submitted %r to berlin.de as %s", event.summary, external_id)
        return PushResult(external_id=external_id)

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Submit the event again; the form has no edit path."""
        await self.push_event(event)
        return UpdateResult()

    async def delete_event(self, external_id: str) -> None:
        logger.warning("berlin.de form does not support deletion; ignoring %s", external_id)
