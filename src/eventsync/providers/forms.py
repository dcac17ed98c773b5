"""Helpers shared by the web-form and admin-panel adapters."""

from __future__ import annotations

import re
from datetime import date

from eventsync.providers.base import ProviderContext, to_local
from eventsync.sync.errors import ProviderConfigurationError
from eventsync.sync.store import ResolvedContact
from eventsync.sync.types import ExternalEvent, SyncConfiguration

BROWSER_USER_AGENT = "Mozilla/5.0 (compatible; EventSync/1.0)"
FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "User-Agent": BROWSER_USER_AGENT,
}

_PRICE_PATTERN = re.compile(r"\d+(?:[.,]\d+)?")


async def resolve_submitter(
    context: ProviderContext,
    config: SyncConfiguration,
    event: ExternalEvent,
    *,
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
) -> ResolvedContact:
    """Contact to publish with *event*.

    The event's own primary contact wins; otherwise the submitter fields from
    the settings, filled up from the configuration owner.
    """
    event_id = event.app_event_id
    if event_id is not None:
        resolved = await context.contacts.resolve_primary_contact(event_id)
        if resolved is not None:
            return resolved
    if name and email:
        return ResolvedContact(name=name, email=email, phone=phone)
    owner = await context.users.get_user(config.user_id)
    if owner is None:
        raise ProviderConfigurationError(f"User {config.user_id} not found")
    return ResolvedContact(name=name or owner.name, email=email or owner.email, phone=phone)


def is_free(ticket_price: str | None) -> bool:
    """True when no price is given, it is not numeric, or it is zero."""
    if not ticket_price:
        return True
    match = _PRICE_PATTERN.search(ticket_price)
    if match is None:
        return True
    return float(match.group(0).replace(",", ".")) == 0


def local_start(event: ExternalEvent) -> tuple[date | None, str | None]:
    """Start date and ``HH:MM`` time in the event's own timezone."""
    if event.start_datetime is not None:
        moment = to_local(event.start_datetime, event.start_timezone)
        return moment.date(), moment.strftime("%H:%M")
    return event.start_date, None


def local_end(event: ExternalEvent) -> tuple[date | None, str | None]:
    if event.end_datetime is not None:
        moment = to_local(event.end_datetime, event.end_timezone or event.start_timezone)
        return moment.date(), moment.strftime("%H:%M")
    return event.end_date, None
