"""Eventbrite ticketing adapter (push-only REST)."""

from __future__ import annotations

import logging
from datetime import UTC
from typing import Any

from eventsync.providers.base import SyncProvider
from eventsync.sync.errors import ProviderConfigurationError, ProviderDataError, SyncError
from eventsync.sync.types import (
    EventStatus,
    ExternalEvent,
    ProviderType,
    PushResult,
    SyncConfiguration,
    UpdateResult,
)

logger = logging.getLogger(__name__)

EVENTBRITE_API_BASE_URL = "https://www.eventbriteapi.com/v3"
DEFAULT_TIMEZONE = "Europe/Berlin"

_STATUS_MAP = {
    EventStatus.CONFIRMED: "live",
    EventStatus.CANCELLED: "cancelled",
}


def _utc_stamp(value) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_eventbrite_body(event: ExternalEvent, *, currency: str, venue_id: str | None) -> dict:
    """Eventbrite ``event`` object for create/update."""
    timezone = event.start_timezone or DEFAULT_TIMEZONE
    if event.start_datetime is not None:
        start_utc = _utc_stamp(event.start_datetime)
    elif event.start_date is not None:
        start_utc = f"{event.start_date.isoformat()}T00:00:00Z"
    else:
        raise ProviderDataError(f"Event {event.summary!r} has no start date or time")

    if event.end_datetime is not None:
        end_utc = _utc_stamp(event.end_datetime)
    else:
        end_day = event.end_date or event.start_date
        if end_day is None:
            assert event.start_datetime is not None
            end_day = event.start_datetime.astimezone(UTC).date()
        end_utc = f"{end_day.isoformat()}T23:59:59Z"

    body: dict[str, Any] = {
        "name": {"html": event.summary},
        "start": {"timezone": timezone, "utc": start_utc},
        "end": {"timezone": event.end_timezone or timezone, "utc": end_utc},
        "currency": currency,
        "listed": True,
    }
    if event.description:
        body["description"] = {"html": event.description}
    if venue_id:
        body["venue_id"] = venue_id
    body["status"] = _STATUS_MAP.get(event.status, "draft")
    for key in ("category_id", "format_id"):
        value = event.metadata.get(key)
        if value:
            body[key] = str(value)
    return {"event": body}


class EventbriteProvider(SyncProvider):
    provider_type = ProviderType.EVENTBRITE

    def __init__(self, context) -> None:
        super().__init__(context)
        self._token: str | None = None

    @property
    def name(self) -> str:
        return "Eventbrite"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        self._token = self._require_env("EVENTBRITE_API_TOKEN")["EVENTBRITE_API_TOKEN"]
        if not self.settings.organizer_id:
            raise ProviderConfigurationError("Eventbrite requires organizerId in settings")

    async def validate_connection(self) -> bool:
        try:
            await self._request("validate", "GET", "/users/me/")
        except SyncError:
            return False
        return True

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        response = await self._send(
            operation,
            method,
            f"{EVENTBRITE_API_BASE_URL}{path}",
            headers={"Authorization": f"Bearer {self._token}"},
            **kwargs,
        )
        self._raise_for_status(response, operation)
        if response.status_code == 204 or not response.content:
            return {}
        return self._json_object(response, operation)

    def _body(self, event: ExternalEvent) -> dict:
        return build_eventbrite_body(
            event, currency=self.settings.currency, venue_id=self.settings.venue_id
        )

    async def push_event(self, event: ExternalEvent) -> PushResult:
        payload = await self._request(
            "push",
            "POST",
            f"/organizations/{self.settings.organizer_id}/events/",
            json=self._body(event),
        )
        event_id = payload.get("id")
        if not event_id:
            raise ProviderDataError("Eventbrite did not return an id for the created event")
        return PushResult(external_id=str(event_id), etag=payload.get("changed"))

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        payload = await self._request(
            "update", "POST", f"/events/{external_id}/", json=self._body(event)
        )
        return UpdateResult(etag=payload.get("changed"))

    async def delete_event(self, external_id: str) -> None:
        await self._request("delete", "DELETE", f"/events/{external_id}/")
