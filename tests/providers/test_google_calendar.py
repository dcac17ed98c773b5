"""Tests for the Google Calendar adapter against a mocked Calendar API."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime, timedelta

import httpx
import pytest

from eventsync.providers.google_calendar import (
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarProvider,
    build_google_event_body,
    google_event_to_external,
)
from eventsync.sync.errors import (
    ProviderConfigurationError,
    ProviderRequestError,
    ReconnectRequiredError,
)
from eventsync.sync.types import (
    AttendeeResponseStatus,
    EventStatus,
    ExternalEvent,
    ProviderType,
    SyncConfiguration,
    SyncDirection,
)
from eventsync.testing import mock_http_context

pytestmark = pytest.mark.unit

ENV = {"GOOGLE_CLIENT_ID": "client-id", "GOOGLE_CLIENT_SECRET": "client-secret"}


def _config(**credentials) -> SyncConfiguration:
    if not credentials:
        credentials = {
            "refresh_token": "refresh-1",
            "access_token": "access-1",
            "expires_at": (datetime.now(UTC) + timedelta(hours=1)).isoformat(),
        }
    return SyncConfiguration(
        id="cfg-google",
        user_id="user-1",
        provider_id="primary",
        provider_type=ProviderType.GOOGLE_CALENDAR,
        direction=SyncDirection.BIDIRECTIONAL,
        credentials=credentials,
    )


def _provider(handler, *, env=ENV, on_tokens_refreshed=None) -> GoogleCalendarProvider:
    context = mock_http_context(handler, env=env, on_tokens_refreshed=on_tokens_refreshed)
    return GoogleCalendarProvider(context)


def _item(event_id: str, **fields) -> dict:
    item = {
        "id": event_id,
        "etag": f'"{event_id}-etag"',
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2026-06-01T17:00:00+02:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-06-01T19:00:00+02:00", "timeZone": "Europe/Berlin"},
    }
    item.update(fields)
    return item


class TestInitialize:
    async def test_missing_refresh_token_requires_reconnect(self):
        provider = _provider(lambda request: httpx.Response(500))
        with pytest.raises(ReconnectRequiredError):
            await provider.initialize(_config(access_token="only-access"))
        await provider.shutdown()

    async def test_missing_client_env_is_a_configuration_error(self):
        provider = _provider(lambda request: httpx.Response(500), env={})
        with pytest.raises(ProviderConfigurationError):
            await provider.initialize(_config())
        await provider.shutdown()


class TestPull:
    async def test_full_pull_follows_pages_and_keeps_sync_token(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={"items": [_item("a")], "nextPageToken": "p2"})
            return httpx.Response(200, json={"items": [_item("b")], "nextSyncToken": "sync-9"})

        provider = _provider(handler)
        await provider.initialize(_config())
        result = await provider.pull_events()
        await provider.shutdown()

        assert [event.external_id for event in result.events] == ["a", "b"]
        assert result.next_sync_token == "sync-9"
        first = seen[0].url.params
        assert first["singleEvents"] == "true"
        assert first["showDeleted"] == "true"
        assert "timeMin" in first and "timeMax" in first
        assert seen[1].url.params["pageToken"] == "p2"
        assert seen[0].headers["Authorization"] == "Bearer access-1"

    async def test_gone_sync_token_falls_back_to_full_pull(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if "syncToken" in request.url.params:
                gone = {"error": {"message": "Sync token is no longer valid"}}
                return httpx.Response(410, json=gone)
            return httpx.Response(200, json={"items": [_item("a")], "nextSyncToken": "sync-new"})

        provider = _provider(handler)
        await provider.initialize(_config())
        result = await provider.pull_events("sync-old")
        await provider.shutdown()

        assert len(seen) == 2
        assert "syncToken" not in seen[1].url.params
        assert result.next_sync_token == "sync-new"

    async def test_refreshes_token_and_reports_new_credentials(self):
        refreshed: list[dict] = []

        async def on_refresh(config, credentials):
            refreshed.append(credentials)

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer fresh"
            return httpx.Response(200, json={"items": []})

        provider = _provider(handler, on_tokens_refreshed=on_refresh)
        await provider.initialize(_config(refresh_token="refresh-1"))
        await provider.pull_events()
        await provider.shutdown()

        assert refreshed[0]["access_token"] == "fresh"
        assert refreshed[0]["refresh_token"] == "refresh-1"

    async def test_rejected_refresh_token_requires_reconnect(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        provider = _provider(handler)
        await provider.initialize(_config(refresh_token="revoked"))
        with pytest.raises(ReconnectRequiredError):
            await provider.pull_events()
        await provider.shutdown()

    async def test_persistent_401_requires_reconnect(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        provider = _provider(handler)
        await provider.initialize(_config())
        with pytest.raises(ReconnectRequiredError):
            await provider.pull_events()
        await provider.shutdown()


class TestPushUpdateDelete:
    async def test_push_posts_body_with_app_event_id(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = request.url
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "g-new", "etag": '"e1"'})

        provider = _provider(handler)
        await provider.initialize(_config())
        result = await provider.push_event(
            ExternalEvent(
                summary="Picnic",
                start_date=date(2026, 7, 4),
                metadata={"app_event_id": "evt-1", "event_id": "evt-1"},
            )
        )
        await provider.shutdown()

        assert result.external_id == "g-new"
        assert result.etag == '"e1"'
        assert captured["url"].params["sendUpdates"] == "all"
        assert captured["body"]["extendedProperties"]["private"]["app_event_id"] == "evt-1"
        assert captured["body"]["end"] == {"date": "2026-07-05"}

    async def test_update_error_carries_status(self):
        provider = _provider(lambda request: httpx.Response(409, json={"error": "conflict"}))
        await provider.initialize(_config())
        with pytest.raises(ProviderRequestError) as excinfo:
            await provider.update_event("g-1", ExternalEvent(summary="x", start_date=date.today()))
        await provider.shutdown()

        assert excinfo.value.status_code == 409

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_of_missing_event_succeeds(self, status):
        provider = _provider(lambda request: httpx.Response(status))
        await provider.initialize(_config())
        await provider.delete_event("g-gone")
        await provider.shutdown()


class TestWebhooks:
    async def test_setup_parses_expiration(self):
        captured: dict = {}
        expires = datetime(2026, 8, 1, 12, 0, tzinfo=UTC)

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": captured["body"]["id"],
                    "resourceId": "res-1",
                    "expiration": str(int(expires.timestamp() * 1000)),
                },
            )

        provider = _provider(handler)
        await provider.initialize(_config())
        registration = await provider.setup_webhook("https://app.example.org/api/sync/webhook/x")
        await provider.shutdown()

        assert registration.resource_id == "res-1"
        assert registration.expires_at == expires
        assert captured["body"]["type"] == "web_hook"
        assert captured["body"]["token"] == "cfg-google"


class TestTranslation:
    def test_cancelled_all_day_event_with_attendees(self):
        event = google_event_to_external(
            {
                "id": "g-1",
                "status": "cancelled",
                "start": {"date": "2026-12-24"},
                "end": {"date": "2026-12-25"},
                "attendees": [
                    {"email": "kim@example.org", "responseStatus": "accepted"},
                    {"displayName": "No email"},
                ],
                "extendedProperties": {"private": {"app_event_id": "evt-7"}},
            },
            provider_id="primary",
        )

        assert event.is_cancelled
        assert event.status is EventStatus.CANCELLED
        assert event.start_date == date(2026, 12, 24)
        assert event.summary == "Untitled Event"
        assert [a.response_status for a in event.attendees] == [AttendeeResponseStatus.ACCEPTED]
        assert event.app_event_id == "evt-7"

    def test_timed_event_without_end_gets_one_hour(self):
        start = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)
        body = build_google_event_body(ExternalEvent(summary="Standup", start_datetime=start))

        assert body["start"] == {"dateTime": "2026-02-01T09:00:00Z"}
        assert body["end"] == {"dateTime": "2026-02-01T10:00:00Z"}
