"""Seniorennetz Berlin: event suggestions through the public submission form."""

from __future__ import annotations

import logging
import re

from eventsync.providers.base import SyncProvider, utc_now
from eventsync.providers.forms import FORM_HEADERS, local_end, local_start, resolve_submitter
from eventsync.sync.errors import ProviderDataError
from eventsync.sync.types import ExternalEvent, ProviderType, PushResult, UpdateResult

logger = logging.getLogger(__name__)

SENIORENNETZ_FORM_URL = "https://seniorennetz.berlin/de/eintragvorschlagen?service"
UPDATE_NOTE = "\n\n[UPDATE] This is an updated version of a previously submitted event."
SUBMITTED_BY = "eventsync"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def seniorennetz_external_id(summary: str, *, timestamp_ms: int) -> str:
    title_hash = _NON_ALNUM.sub("", summary[:10]).lower()
    return f"seniorennetz-{timestamp_ms}-{title_hash}"


class SeniorennetzProvider(SyncProvider):
    provider_type = ProviderType.SENIORENNETZ_BERLIN

    @property
    def name(self) -> str:
        return "Seniorennetz.Berlin"

    async def build_form(self, event: ExternalEvent, *, is_update: bool = False) -> dict[str, str]:
        start_day, start_time = local_start(event)
        if start_day is None:
            raise ProviderDataError(f"Event {event.summary!r} has no start date or time")
        _, end_time = local_end(event)

        description = event.description or event.summary
        if is_update:
            description += UPDATE_NOTE
        form = {
            "title": event.summary,
            "description": description,
            "start_date": start_day.isoformat(),
            "start_time": start_time or "00:00",
        }
        if end_time is not None:
            form["end_time"] = end_time
        elif event.is_all_day:
            form["end_time"] = "23:59"
        if event.location:
            form["location"] = event.location

        settings = self.settings
        contact = await resolve_submitter(
            self._context,
            self.config,
            event,
            name=settings.submitter_name,
            email=settings.submitter_email,
            phone=settings.submitter_phone,
        )
        form["contact_name"] = contact.name
        if contact.email:
            form["contact_email"] = contact.email
        if contact.phone:
            form["contact_phone"] = contact.phone
        if settings.organization:
            form["organization"] = settings.organization
        if settings.district:
            form["district"] = settings.district
        form["category"] = settings.category
        form["target_audience"] = "senioren"
        form["submitted_by"] = SUBMITTED_BY
        form["submission_date"] = utc_now().isoformat()
        return form

    async def _submit(self, operation: str, form: dict[str, str]) -> None:
        response = await self._send(
            operation, "POST", SENIORENNETZ_FORM_URL, data=form, headers=FORM_HEADERS
        )
        self._raise_for_status(response, operation)

    async def push_event(self, event: ExternalEvent) -> PushResult:
        await self._submit("push", await self.build_form(event))
        now = utc_now()
        external_id = seniorennetz_external_id(
            event.summary, timestamp_ms=int(now.timestamp() * 1000)
        )
        return PushResult(external_id=external_id, etag=now.isoformat())

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Submit again with an update note; the operators merge by hand."""
        await self._submit("update", await self.build_form(event, is_update=True))
        return UpdateResult(etag=utc_now().isoformat())

    async def delete_event(self, external_id: str) -> None:
        logger.warning(
            "Seniorennetz.Berlin entries can only be removed by email to the operators; "
            "ignoring delete of %s",
            external_id,
        )
