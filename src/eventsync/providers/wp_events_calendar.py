"""WordPress "The Events Calendar" adapter (push-only REST).

Authenticates with a WordPress application password (HTTP Basic).  Venues and
organizers are ensured by search-then-create before the event itself is
written, so repeated pushes reuse the same venue and organizer posts.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from eventsync.providers.base import SyncProvider, to_local
from eventsync.sync.errors import ProviderConfigurationError, ProviderDataError, SyncError
from eventsync.sync.types import (
    ExternalEvent,
    ExternalOrganizer,
    ExternalVenue,
    ProviderType,
    PushResult,
    SyncConfiguration,
    UpdateResult,
)

logger = logging.getLogger(__name__)

TRIBE_API_PATH = "/wp-json/tribe/events/v1"

_RECURRENCE_TYPES = {"FREQ=WEEKLY": "weekly", "FREQ=DAILY": "daily"}


def build_wp_event_body(event: ExternalEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "title": event.summary,
        "content": event.description or "",
        "status": "publish",
    }
    if event.start_datetime is not None:
        local_start = to_local(event.start_datetime, event.start_timezone)
        body["start_date"] = local_start.date().isoformat()
        body["start_time"] = local_start.strftime("%H:%M")
    elif event.start_date is not None:
        body["start_date"] = event.start_date.isoformat()
        body["all_day"] = True
    else:
        raise ProviderDataError(f"Event {event.summary!r} has no start date or time")

    if event.end_datetime is not None:
        local_end = to_local(event.end_datetime, event.end_timezone or event.start_timezone)
        body["end_date"] = local_end.date().isoformat()
        body["end_time"] = local_end.strftime("%H:%M")
    elif event.end_date is not None:
        body["end_date"] = event.end_date.isoformat()

    if event.start_timezone:
        body["timezone"] = event.start_timezone

    if event.recurrence:
        rule = event.recurrence[0]
        for marker, recurrence_type in _RECURRENCE_TYPES.items():
            if marker in rule:
                body["recurrence"] = {"type": recurrence_type, "end_type": "never"}
                break

    categories = event.metadata.get("categories")
    if categories:
        body["categories"] = categories
    custom_fields = event.metadata.get("custom_fields")
    if custom_fields:
        body["meta"] = custom_fields
    if event.source_url:
        body["website"] = event.source_url
    if event.ticket_price:
        body["cost"] = event.ticket_price
    return body


class WpEventsCalendarProvider(SyncProvider):
    provider_type = ProviderType.WP_THE_EVENTS_CALENDAR

    def __init__(self, context) -> None:
        super().__init__(context)
        self._base_url = ""
        self._auth: httpx.BasicAuth | None = None

    @property
    def name(self) -> str:
        return "WP The Events Calendar"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        env = self._context.env
        settings = self.settings
        base_url = settings.base_url or env.get("WP_EVENTS_CALENDAR_BASE_URL", "")
        username = settings.username or env.get("WP_EVENTS_CALENDAR_USERNAME", "")
        app_password = settings.app_password or env.get("WP_EVENTS_CALENDAR_APP_PASSWORD", "")
        missing = [
            name
            for name, value in (
                ("WP_EVENTS_CALENDAR_BASE_URL", base_url),
                ("WP_EVENTS_CALENDAR_USERNAME", username),
                ("WP_EVENTS_CALENDAR_APP_PASSWORD", app_password),
            )
            if not value.strip()
        ]
        if missing:
            raise ProviderConfigurationError(
                f"{self.name}: missing environment variable(s): {', '.join(missing)}"
            )
        self._base_url = base_url.strip().rstrip("/")
        self._auth = httpx.BasicAuth(username.strip(), app_password.strip())

    def _url(self, path: str) -> str:
        return f"{self._base_url}{TRIBE_API_PATH}{path}"

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any):
        return await self._send(operation, method, self._url(path), auth=self._auth, **kwargs)

    async def _request_json(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        response = await self._request(operation, method, path, **kwargs)
        self._raise_for_status(response, operation)
        if not response.content:
            return {}
        return self._json_object(response, operation)

    async def validate_connection(self) -> bool:
        try:
            response = await self._request("validate", "GET", "/events", params={"per_page": 1})
        except SyncError:
            logger.warning("WordPress Events Calendar connection failed", exc_info=True)
            return False
        return response.is_success

    async def _ensure_venue(self, venue: ExternalVenue) -> int | None:
        try:
            found = await self._request_json(
                "ensure_venue", "GET", "/venues", params={"search": venue.name}
            )
            venues = found.get("venues") or []
            if venues:
                return venues[0].get("id")
            created = await self._request_json(
                "ensure_venue",
                "POST",
                "/venues",
                json={
                    "venue": venue.name,
                    "address": venue.address,
                    "city": venue.city,
                    "country": venue.country,
                    "province": venue.province,
                    "zip": venue.zip,
                    "phone": venue.phone,
                    "website": venue.website,
                    "show_map": True,
                    "show_map_link": True,
                },
            )
            return created.get("id")
        except SyncError:
            logger.error("Error ensuring venue %r in WordPress", venue.name, exc_info=True)
            return None

    async def _ensure_organizer(self, organizer: ExternalOrganizer) -> int | None:
        try:
            found = await self._request_json(
                "ensure_organizer",
                "GET",
                "/organizers",
                params={"search": organizer.email or organizer.name},
            )
            candidates = found.get("organizers") or []
            if organizer.email:
                for candidate in candidates:
                    if candidate.get("email") == organizer.email:
                        return candidate.get("id")
            for candidate in candidates:
                if candidate.get("organizer") == organizer.name:
                    return candidate.get("id")
            created = await self._request_json(
                "ensure_organizer",
                "POST",
                "/organizers",
                json={
                    "organizer": organizer.name,
                    "email": organizer.email,
                    "phone": organizer.phone,
                    "website": organizer.website,
                },
            )
            return created.get("id")
        except SyncError:
            logger.error("Error ensuring organizer %r in WordPress", organizer.name, exc_info=True)
            return None

    async def _body(self, event: ExternalEvent) -> dict[str, Any]:
        body = build_wp_event_body(event)
        if event.venue is not None:
            venue_id = await self._ensure_venue(event.venue)
            if venue_id:
                body["venue"] = venue_id
        if event.organizer is not None:
            organizer_id = await self._ensure_organizer(event.organizer)
            if organizer_id:
                body["organizer"] = organizer_id
        return body

    async def push_event(self, event: ExternalEvent) -> PushResult:
        created = await self._request_json("push", "POST", "/events", json=await self._body(event))
        event_id = created.get("id")
        if event_id is None:
            raise ProviderDataError("WordPress did not return an id for the created event")
        return PushResult(external_id=str(event_id), etag=created.get("modified_gmt"))

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        updated = await self._request_json(
            "update", "POST", f"/events/{external_id}", json=await self._body(event)
        )
        return UpdateResult(etag=updated.get("modified_gmt"))

    async def delete_event(self, external_id: str) -> None:
        await self._request_json("delete", "DELETE", f"/events/{external_id}")
