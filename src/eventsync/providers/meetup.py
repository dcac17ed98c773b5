"""Meetup adapter (push-only GraphQL)."""

from __future__ import annotations

import logging
from datetime import UTC
from typing import Any

from eventsync.providers.base import SyncProvider, utc_now
from eventsync.sync.errors import ProviderDataError, ProviderRequestError, SyncError
from eventsync.sync.types import (
    ExternalEvent,
    ProviderType,
    PushResult,
    SyncConfiguration,
    UpdateResult,
)

logger = logging.getLogger(__name__)

MEETUP_GRAPHQL_URL = "https://api.meetup.com/gql-ext"
DEFAULT_DURATION_MINUTES = 60
ALL_DAY_DURATION_MINUTES = 24 * 60

CREATE_EVENT_MUTATION = """
mutation($input: CreateEventInput!) {
  createEvent(input: $input) {
    event { id title eventUrl }
    errors { message code field }
  }
}
"""

EDIT_EVENT_MUTATION = """
mutation($input: EditEventInput!) {
  editEvent(input: $input) {
    event { id title }
    errors { message code field }
  }
}
"""

SELF_QUERY = "query { self { id name } }"


def meetup_duration(event: ExternalEvent) -> str:
    """ISO-8601 duration such as ``PT90M``."""
    if event.is_all_day:
        return f"PT{ALL_DAY_DURATION_MINUTES}M"
    if event.start_datetime is not None and event.end_datetime is not None:
        minutes = int((event.end_datetime - event.start_datetime).total_seconds() // 60)
        if minutes > 0:
            return f"PT{minutes}M"
    return f"PT{DEFAULT_DURATION_MINUTES}M"


def build_event_input(
    event: ExternalEvent, *, group_urlname: str, venue_id: str | None
) -> dict[str, Any]:
    if event.start_datetime is not None:
        start = event.start_datetime.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    elif event.start_date is not None:
        start = f"{event.start_date.isoformat()}T00:00:00Z"
    else:
        raise ProviderDataError(f"Event {event.summary!r} has no start date or time")

    is_online = not event.location or "online" in event.location.lower()
    payload: dict[str, Any] = {
        "groupUrlname": group_urlname,
        "title": event.summary,
        "description": event.description or "",
        "startDateTime": start,
        "duration": meetup_duration(event),
        "publishStatus": "PUBLISHED",
        "eventType": "ONLINE" if is_online else "IN_PERSON",
    }
    if event.start_timezone:
        payload["timezone"] = event.start_timezone
    if event.location and venue_id and not is_online:
        payload["venueId"] = venue_id
    return payload


class MeetupProvider(SyncProvider):
    provider_type = ProviderType.MEETUP

    def __init__(self, context) -> None:
        super().__init__(context)
        self._token: str | None = None

    @property
    def name(self) -> str:
        return "Meetup"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        self._token = self._require_env("MEETUP_ACCESS_TOKEN")["MEETUP_ACCESS_TOKEN"]

    async def validate_connection(self) -> bool:
        try:
            await self._graphql("validate", SELF_QUERY, {})
        except SyncError:
            return False
        return True

    async def _graphql(self, operation: str, query: str, variables: dict[str, Any]) -> dict:
        response = await self._send(
            operation,
            "POST",
            MEETUP_GRAPHQL_URL,
            headers={"Authorization": f"Bearer {self._token}"},
            json={"query": query, "variables": variables},
        )
        self._raise_for_status(response, operation)
        payload = self._json_object(response, operation)
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in errors
            )
            raise ProviderRequestError(
                status_code=response.status_code,
                provider=self.name,
                operation=operation,
                message=f"GraphQL errors: {messages}",
            )
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def _mutation_result(self, data: dict, field: str, operation: str) -> dict:
        result = data.get(field)
        if not isinstance(result, dict):
            raise ProviderDataError(f"Meetup {field} returned no result")
        errors = result.get("errors")
        if errors:
            messages = "; ".join(str(err.get("message", err)) for err in errors)
            raise ProviderRequestError(
                status_code=None, provider=self.name, operation=operation, message=messages
            )
        return result.get("event") or {}

    def _input(self, event: ExternalEvent) -> dict[str, Any]:
        return build_event_input(
            event,
            group_urlname=self.settings.group_urlname,
            venue_id=self.settings.venue_id,
        )

    async def push_event(self, event: ExternalEvent) -> PushResult:
        data = await self._graphql("push", CREATE_EVENT_MUTATION, {"input": self._input(event)})
        created = self._mutation_result(data, "createEvent", "push")
        event_id = created.get("id")
        if not event_id:
            raise ProviderDataError("Meetup did not return an id for the created event")
        return PushResult(external_id=str(event_id), etag=utc_now().isoformat())

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        edit_input = {"eventId": external_id, **self._input(event)}
        edit_input.pop("groupUrlname", None)
        data = await self._graphql("update", EDIT_EVENT_MUTATION, {"input": edit_input})
        self._mutation_result(data, "editEvent", "update")
        return UpdateResult(etag=utc_now().isoformat())

    async def delete_event(self, external_id: str) -> None:
        data = await self._graphql(
            "delete",
            EDIT_EVENT_MUTATION,
            {"input": {"eventId": external_id, "publishStatus": "CANCELLED"}},
        )
        self._mutation_result(data, "editEvent", "delete")
