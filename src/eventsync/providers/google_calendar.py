"""Google Calendar adapter: bidirectional sync with OAuth refresh and push channels."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from eventsync.providers.base import ProviderContext, SyncProvider
from eventsync.sync.errors import (
    ProviderAuthError,
    ProviderDataError,
    ReconnectRequiredError,
    SyncError,
    SyncTokenExpiredError,
    safe_response_message,
)
from eventsync.sync.types import (
    AttendeeResponseStatus,
    EventStatus,
    ExternalAttendee,
    ExternalEvent,
    ExternalOrganizer,
    ExternalReminders,
    ProviderType,
    PullResult,
    PushResult,
    ReminderOverride,
    SyncDirection,
    UpdateResult,
    WebhookRegistration,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_PAGE_SIZE = 250
DEFAULT_EVENT_SUMMARY = "Untitled Event"
APP_EVENT_ID_PROPERTY = "app_event_id"
_AUTH_RETRY_STATUS_CODES = {401, 403}
_PASSTHROUGH_METADATA_KEYS = ("colorId", "visibility", "transparency")


_REFRESH_MARGIN = timedelta(seconds=60)
_DEFAULT_TOKEN_LIFETIME = 3600
_MIN_TOKEN_LIFETIME = 90


@dataclass
class GoogleTokens:
    """OAuth state for one configuration; access tokens are renewed 60 s early."""

    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    expires_at: datetime | None = None

    def usable(self) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        return datetime.now(UTC) < self.expires_at - _REFRESH_MARGIN

    async def refresh(self, http: httpx.AsyncClient) -> dict[str, Any]:
        """Exchange the refresh token and return the credential fields that changed."""
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await http.post(
                GOOGLE_OAUTH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(f"Google token refresh request failed: {exc}") from exc

        if response.status_code in (400, 401):
            raise ReconnectRequiredError(
                f"Google rejected the stored refresh token ({response.status_code}): "
                f"{safe_response_message(response)}. Reconnect the Google account."
            )
        if not response.is_success:
            raise ProviderAuthError(
                f"Google token refresh failed ({response.status_code}): "
                f"{safe_response_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAuthError("Google token endpoint returned invalid JSON") from exc

        token = _text(payload.get("access_token")) if isinstance(payload, dict) else None
        if token is None:
            raise ProviderAuthError("Google token response has no access_token")

        self.access_token = token
        self.expires_at = datetime.now(UTC) + timedelta(
            seconds=_token_lifetime(payload.get("expires_in"))
        )
        changed: dict[str, Any] = {
            "access_token": token,
            "expires_at": self.expires_at.isoformat(),
        }
        rotated = _text(payload.get("refresh_token"))
        if rotated is not None:
            self.refresh_token = rotated
            changed["refresh_token"] = rotated
        return changed


def _token_lifetime(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return _DEFAULT_TOKEN_LIFETIME
    return max(int(value), _MIN_TOKEN_LIFETIME)


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_datetime(value: str) -> datetime:
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw[:-1] + "+00:00" if raw.endswith("Z") else raw)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_expiry(value: Any) -> datetime | None:
    """Stored ``expires_at`` or a watch ``expiration``: datetime, ISO text or epoch s/ms."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if not value.isdigit():
            try:
                return _parse_datetime(value)
            except ValueError:
                return None
        value = int(value)
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    return None


def _parse_boundary(payload: Any) -> tuple[date | None, datetime | None, str | None]:
    if not isinstance(payload, dict):
        return None, None, None
    timezone = _text(payload.get("timeZone"))
    date_time = _text(payload.get("dateTime"))
    if date_time is not None:
        return None, _parse_datetime(date_time), timezone
    date_value = _text(payload.get("date"))
    if date_value is not None:
        try:
            return date.fromisoformat(date_value), None, timezone
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
    return None, None, timezone


def _extract_attendees(payload: Any) -> list[ExternalAttendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[ExternalAttendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            ExternalAttendee(
                email=email,
                display_name=_text(entry.get("displayName")),
                response_status=AttendeeResponseStatus.parse(entry.get("responseStatus")),
            )
        )
    return attendees


def _extract_reminders(payload: Any) -> ExternalReminders | None:
    if not isinstance(payload, dict):
        return None
    overrides: list[ReminderOverride] = []
    raw_overrides = payload.get("overrides")
    if isinstance(raw_overrides, list):
        for entry in raw_overrides:
            if not isinstance(entry, dict):
                continue
            minutes = entry.get("minutes")
            if isinstance(minutes, int) and not isinstance(minutes, bool) and minutes >= 0:
                overrides.append(
                    ReminderOverride(method=str(entry.get("method") or "popup"), minutes=minutes)
                )
    if overrides:
        return ExternalReminders(use_default=False, overrides=overrides)
    return ExternalReminders(use_default=payload.get("useDefault") is not False, overrides=[])


def _extract_organizer(payload: Any) -> ExternalOrganizer | None:
    if not isinstance(payload, dict):
        return None
    email = _text(payload.get("email"))
    name = _text(payload.get("displayName")) or email
    if name is None:
        return None
    return ExternalOrganizer(name=name, email=email)


def _parse_status(value: Any) -> EventStatus | None:
    if not isinstance(value, str):
        return None
    try:
        return EventStatus(value.strip().lower())
    except ValueError:
        return None


def google_event_to_external(payload: dict[str, Any], *, provider_id: str) -> ExternalEvent:
    """Translate a Google Calendar API event resource into an ``ExternalEvent``."""
    event_id = _text(payload.get("id"))
    if event_id is None:
        raise ProviderDataError("Google Calendar event payload is missing a non-empty id")

    try:
        start_date, start_datetime, start_timezone = _parse_boundary(payload.get("start"))
        end_date, end_datetime, end_timezone = _parse_boundary(payload.get("end"))
    except ValueError as exc:
        raise ProviderDataError(str(exc)) from exc

    metadata: dict[str, Any] = {}
    html_link = _text(payload.get("htmlLink"))
    if html_link is not None:
        metadata["htmlLink"] = html_link
    for key in _PASSTHROUGH_METADATA_KEYS:
        value = _text(payload.get(key))
        if value is not None:
            metadata[key] = value

    extended = payload.get("extendedProperties")
    private = extended.get("private") if isinstance(extended, dict) else None
    if isinstance(private, dict):
        app_event_id = _text(private.get(APP_EVENT_ID_PROPERTY))
        if app_event_id is not None:
            metadata[APP_EVENT_ID_PROPERTY] = app_event_id

    recurrence_raw = payload.get("recurrence")
    recurrence = (
        [entry.strip() for entry in recurrence_raw if isinstance(entry, str) and entry.strip()]
        if isinstance(recurrence_raw, list)
        else []
    )

    updated_raw = _text(payload.get("updated"))
    updated: datetime | None = None
    if updated_raw is not None:
        try:
            updated = _parse_datetime(updated_raw)
        except ValueError:
            updated = None

    return ExternalEvent(
        external_id=event_id,
        provider_id=provider_id,
        summary=_text(payload.get("summary")) or DEFAULT_EVENT_SUMMARY,
        description=_text(payload.get("description")),
        location=_text(payload.get("location")),
        start_date=start_date,
        start_datetime=start_datetime,
        start_timezone=start_timezone,
        end_date=end_date,
        end_datetime=end_datetime,
        end_timezone=end_timezone,
        status=_parse_status(payload.get("status")),
        recurrence=recurrence,
        attendees=_extract_attendees(payload.get("attendees")),
        reminders=_extract_reminders(payload.get("reminders")),
        organizer=_extract_organizer(payload.get("organizer")),
        metadata=metadata,
        source_url=html_link,
        etag=_text(payload.get("etag")),
        updated=updated,
    )


def _boundary_body(
    day: date | None, moment: datetime | None, timezone: str | None
) -> dict[str, Any] | None:
    if moment is not None:
        body: dict[str, Any] = {"dateTime": _rfc3339(moment)}
        if timezone:
            body["timeZone"] = timezone
        return body
    if day is not None:
        return {"date": day.isoformat()}
    return None


def build_google_event_body(event: ExternalEvent) -> dict[str, Any]:
    """Translate an ``ExternalEvent`` into a Google Calendar API event body."""
    start = _boundary_body(event.start_date, event.start_datetime, event.start_timezone)
    if start is None:
        raise ProviderDataError(f"Event {event.summary!r} has no start date or time")

    end = _boundary_body(
        event.end_date, event.end_datetime, event.end_timezone or event.start_timezone
    )
    if end is None:
        if event.start_datetime is not None:
            end = _boundary_body(
                None, event.start_datetime + timedelta(hours=1), event.start_timezone
            )
        else:
            assert event.start_date is not None
            end = {"date": (event.start_date + timedelta(days=1)).isoformat()}

    body: dict[str, Any] = {
        "summary": event.summary or DEFAULT_EVENT_SUMMARY,
        "start": start,
        "end": end,
    }
    if event.description:
        body["description"] = event.description
    location = event.location or (event.venue.name if event.venue else None)
    if location:
        body["location"] = location
    if event.status is not None:
        body["status"] = event.status.value
    if event.recurrence:
        body["recurrence"] = list(event.recurrence)
    if event.attendees:
        body["attendees"] = [
            {
                "email": attendee.email,
                **({"displayName": attendee.display_name} if attendee.display_name else {}),
                "responseStatus": attendee.response_status.value,
            }
            for attendee in event.attendees
        ]
    if event.reminders is not None:
        if event.reminders.overrides:
            body["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": item.method, "minutes": item.minutes}
                    for item in event.reminders.overrides
                ],
            }
        else:
            body["reminders"] = {"useDefault": event.reminders.use_default}
    for key in _PASSTHROUGH_METADATA_KEYS:
        value = event.metadata.get(key)
        if isinstance(value, str) and value:
            body[key] = value

    private: dict[str, str] = {}
    app_event_id = event.app_event_id
    if app_event_id is not None:
        private[APP_EVENT_ID_PROPERTY] = app_event_id
    for key in ("event_id", "series_id"):
        value = event.metadata.get(key)
        if isinstance(value, str) and value:
            private[key] = value
    if private:
        body["extendedProperties"] = {"private": private}
    return body


class GoogleCalendarProvider(SyncProvider):
    """Bidirectional Google Calendar sync for one calendar of one account."""

    provider_type = ProviderType.GOOGLE_CALENDAR
    supports_webhooks = True
    supported_directions = frozenset(
        {SyncDirection.PULL, SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL}
    )

    def __init__(self, context: ProviderContext) -> None:
        super().__init__(context)
        self._tokens: GoogleTokens | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "Google Calendar"

    @property
    def calendar_path(self) -> str:
        return f"/calendars/{quote(self.settings.calendar_id, safe='')}"

    async def initialize(self, config) -> None:
        await super().initialize(config)
        env = self._require_env("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")

        credentials = config.credentials
        refresh_token = _text(credentials.get("refresh_token") or credentials.get("refreshToken"))
        if refresh_token is None:
            raise ReconnectRequiredError(
                "No Google refresh token stored for this configuration. "
                "Reconnect the Google account."
            )
        self._tokens = GoogleTokens(
            client_id=env["GOOGLE_CLIENT_ID"],
            client_secret=env["GOOGLE_CLIENT_SECRET"],
            refresh_token=refresh_token,
            access_token=_text(credentials.get("access_token") or credentials.get("accessToken")),
            expires_at=_parse_expiry(credentials.get("expires_at", credentials.get("expiresAt"))),
        )

    async def validate_connection(self) -> bool:
        try:
            await self._request_json("validate", "GET", self.calendar_path)
        except SyncError as exc:
            logger.warning("Google Calendar connection validation failed: %s", exc)
            return False
        return True

    # -- request helpers -----------------------------------------------------

    async def _access_token(self, *, force: bool = False) -> str:
        tokens = self._tokens
        if tokens is None:
            raise ProviderAuthError("Google Calendar provider not initialized")
        if force or not tokens.usable():
            async with self._refresh_lock:
                if force or not tokens.usable():
                    await self._store_tokens(await tokens.refresh(self._http_client))
        assert tokens.access_token is not None
        return tokens.access_token

    async def _store_tokens(self, changed: dict[str, Any]) -> None:
        callback = self._context.on_tokens_refreshed
        if callback is not None:
            await callback(self.config, {**self.config.credentials, **changed})

    async def _authorized(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        """Send with a bearer token; one forced refresh on 401/403, then reconnect."""
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        for force in (False, True):
            token = await self._access_token(force=force)
            response = await self._send(
                operation, method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
            if response.status_code not in _AUTH_RETRY_STATUS_CODES:
                return response
        raise ReconnectRequiredError(
            f"Google Calendar authentication failed ({response.status_code}): "
            f"{safe_response_message(response)}. Reconnect the Google account."
        )

    async def _request_json(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> dict[str, Any]:
        response = await self._authorized(operation, method, path, **kwargs)
        self._raise_for_status(response, operation)
        if response.status_code == 204 or not response.content:
            return {}
        return self._json_object(response, operation)

    # -- pull ----------------------------------------------------------------

    async def pull_events(self, sync_token: str | None = None) -> PullResult:
        if sync_token:
            try:
                return await self._list_events(sync_token)
            except SyncTokenExpiredError:
                logger.info(
                    "Google sync token expired for config %s; running a full pull",
                    self.config.id,
                )
        return await self._list_events(None)

    def _list_params(self, sync_token: str | None) -> dict[str, Any]:
        params: dict[str, Any] = {"maxResults": GOOGLE_PAGE_SIZE}
        if sync_token:
            params["syncToken"] = sync_token
            return params
        now = datetime.now(UTC)
        tuning = self._context.tuning
        params["singleEvents"] = "true"
        params["showDeleted"] = "true"
        params["orderBy"] = "updated"
        params["timeMin"] = _rfc3339(now - timedelta(days=tuning.full_sync_past_days))
        params["timeMax"] = _rfc3339(now + timedelta(days=tuning.full_sync_future_days))
        return params

    async def _list_events(self, sync_token: str | None) -> PullResult:
        params = self._list_params(sync_token)
        events: list[ExternalEvent] = []
        next_sync_token: str | None = None
        page_token: str | None = None
        while True:
            page_params = {**params, "pageToken": page_token} if page_token else params
            response = await self._authorized(
                "pull", "GET", f"{self.calendar_path}/events", params=page_params
            )
            if response.status_code == 410 and sync_token:
                raise SyncTokenExpiredError(
                    f"Sync token expired for calendar '{self.settings.calendar_id}'"
                )
            self._raise_for_status(response, "pull")
            payload = self._json_object(response, "pull")

            items = payload.get("items")
            for item in items if isinstance(items, list) else []:
                if isinstance(item, dict):
                    events.append(
                        google_event_to_external(item, provider_id=self.config.provider_id)
                    )

            next_sync_token = _text(payload.get("nextSyncToken")) or next_sync_token
            page_token = _text(payload.get("nextPageToken"))
            if page_token is None:
                return PullResult(events=events, next_sync_token=next_sync_token)

    # -- push ----------------------------------------------------------------

    async def push_event(self, event: ExternalEvent) -> PushResult:
        payload = await self._request_json(
            "push",
            "POST",
            f"{self.calendar_path}/events",
            params={"sendUpdates": "all"},
            json=build_google_event_body(event),
        )
        external_id = _text(payload.get("id"))
        if external_id is None:
            raise ProviderDataError("Google Calendar did not return an id for the created event")
        etag = _text(payload.get("etag"))
        return PushResult(external_id=external_id, etag=etag)

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        payload = await self._request_json(
            "update",
            "PUT",
            f"{self.calendar_path}/events/{quote(external_id, safe='')}",
            params={"sendUpdates": "all"},
            json=build_google_event_body(event),
        )
        return UpdateResult(etag=_text(payload.get("etag")))

    async def delete_event(self, external_id: str) -> None:
        response = await self._authorized(
            "delete", "DELETE", f"{self.calendar_path}/events/{quote(external_id, safe='')}"
        )
        if response.status_code in (404, 410):
            logger.info("Google event %s already gone; treating delete as success", external_id)
            return
        self._raise_for_status(response, "delete")

    # -- webhooks ------------------------------------------------------------

    async def setup_webhook(self, callback_url: str) -> WebhookRegistration:
        channel_id = str(uuid.uuid4())
        payload = await self._request_json(
            "setup_webhook",
            "POST",
            f"{self.calendar_path}/events/watch",
            json={
                "id": channel_id,
                "type": "web_hook",
                "address": callback_url,
                "token": self.config.id,
            },
        )
        resource_id = _text(payload.get("resourceId"))
        if resource_id is None:
            raise ProviderDataError("Google watch response is missing resourceId")
        expires_at = _parse_expiry(payload.get("expiration"))
        return WebhookRegistration(
            resource_id=resource_id,
            channel_id=_text(payload.get("id")) or channel_id,
            expires_at=expires_at or datetime.now(UTC) + timedelta(days=7),
        )

    async def renew_webhook(
        self, subscription: WebhookSubscription, callback_url: str
    ) -> WebhookRegistration:
        await self.cancel_webhook(subscription)
        return await self.setup_webhook(callback_url)

    async def cancel_webhook(self, subscription: WebhookSubscription) -> None:
        try:
            await self._request_json(
                "cancel_webhook",
                "POST",
                "/channels/stop",
                json={"id": subscription.channel_id, "resourceId": subscription.resource_id},
            )
        except SyncError:
            logger.warning(
                "Failed to stop Google channel %s for config %s",
                subscription.channel_id,
                subscription.sync_config_id,
                exc_info=True,
            )
