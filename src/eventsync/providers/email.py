"""Outbound email campaigns through Brevo.

Every push renders the event into an HTML/text notification, creates a Brevo
email campaign addressed to the configured recipient plus the event's
attendees, and sends it immediately.  Delivery tracking events (delivered,
opened, click, bounces) arrive through an account-level Brevo webhook and are
returned from ``process_webhook`` as ``DeliveryChange`` records.
"""

from __future__ import annotations

import html
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

from eventsync.providers.base import ProviderContext, SyncProvider, to_local, utc_now
from eventsync.sync.errors import (
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderDataError,
    SyncError,
)
from eventsync.sync.store import ResolvedContact
from eventsync.sync.types import (
    DeliveryChange,
    EntityType,
    ExternalEvent,
    ProviderType,
    PushResult,
    SyncConfiguration,
    UpdateResult,
    WebhookProcessResult,
    WebhookRegistration,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

BREVO_API_BASE_URL = "https://api.brevo.com/v3"
BREVO_WEBHOOK_EVENTS = (
    "delivered",
    "opened",
    "click",
    "hardBounce",
    "softBounce",
    "spam",
    "unsubscribed",
)
# Brevo webhooks never expire; the local record is refreshed yearly.
BREVO_WEBHOOK_LIFETIME = timedelta(days=365)

_WEEKDAYS_DE = ("Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag")
_MONTHS_DE = (
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
)
_NOT_SPECIFIED = "Nicht angegeben"


def format_german_date(
    day: date | None, moment: datetime | None, timezone: str | None = None
) -> str:
    """Long German date (``Freitag, 3. Mai 2024, 18:30``) or ``Nicht angegeben``."""
    if moment is not None:
        local = to_local(moment, timezone)
        return (
            f"{_WEEKDAYS_DE[local.weekday()]}, {local.day}. {_MONTHS_DE[local.month - 1]} "
            f"{local.year}, {local:%H:%M}"
        )
    if day is not None:
        return f"{_WEEKDAYS_DE[day.weekday()]}, {day.day}. {_MONTHS_DE[day.month - 1]} {day.year}"
    return _NOT_SPECIFIED


def _detail_row(label: str, value_html: str) -> str:
    return f'<div class="detail-row"><span class="detail-label">{label}:</span> {value_html}</div>'


def render_event_email(
    event: ExternalEvent,
    contact: ResolvedContact,
    *,
    is_announcement: bool = False,
    calendar_url: str | None = None,
) -> tuple[str, str]:
    """Render the notification body; returns ``(html, text)``."""
    heading = "Neue Mitteilung" if is_announcement else "Neue Veranstaltung"
    start = format_german_date(event.start_date, event.start_datetime, event.start_timezone)
    end = format_german_date(event.end_date, event.end_datetime, event.end_timezone)
    summary = html.escape(event.summary)

    rows = [_detail_row("Titel", summary)]
    text_lines = [f"{heading}: {event.summary}", ""]
    if event.description:
        description = html.escape(event.description).replace("\n", "<br>")
        rows.append(_detail_row("Beschreibung", "<br>" + description))
        text_lines.extend([f"Beschreibung: {event.description}", ""])
    if not is_announcement:
        rows.append(_detail_row("Beginn", html.escape(start)))
        text_lines.append(f"Beginn: {start}")
        if end != _NOT_SPECIFIED:
            rows.append(_detail_row("Ende", html.escape(end)))
            text_lines.append(f"Ende: {end}")
    if event.location:
        rows.append(_detail_row("Ort", html.escape(event.location)))
        text_lines.append(f"Ort: {event.location}")
    if not is_announcement and event.recurrence:
        recurrence = ", ".join(event.recurrence)
        rows.append(_detail_row("Wiederholung", html.escape(recurrence)))
        text_lines.append(f"Wiederholung: {recurrence}")
    if calendar_url:
        link = html.escape(calendar_url, quote=True)
        rows.append(_detail_row("Kalender", f'<a href="{link}">Termin speichern</a>'))
        text_lines.append(f"Kalender: {calendar_url}")

    contact_rows = [_detail_row("Name", html.escape(contact.name))]
    text_lines.extend(["", "Kontaktinformationen", f"Name: {contact.name}"])
    if contact.email:
        email = html.escape(contact.email, quote=True)
        contact_rows.append(_detail_row("E-Mail", f'<a href="mailto:{email}">{email}</a>'))
        text_lines.append(f"E-Mail: {contact.email}")
    if contact.phone:
        phone = html.escape(contact.phone, quote=True)
        contact_rows.append(_detail_row("Telefon", f'<a href="tel:{phone}">{phone}</a>'))
        text_lines.append(f"Telefon: {contact.phone}")

    body_html = (
        '<!DOCTYPE html>\n<html lang="de">\n<head><meta charset="UTF-8">'
        f"<title>{heading}: {summary}</title></head>\n<body>\n"
        f'<div class="header"><h1>{heading}</h1><div class="event-title">{summary}</div></div>\n'
        f'<div class="event-details">{"".join(rows)}</div>\n'
        f'<div class="contact-info"><h3>Kontaktinformationen</h3>{"".join(contact_rows)}</div>\n'
        "</body>\n</html>\n"
    )
    return body_html, "\n".join(text_lines) + "\n"


def _parse_occurred_at(entry: dict[str, Any]) -> datetime | None:
    timestamp = entry.get("ts_event", entry.get("ts"))
    if isinstance(timestamp, int | float) and not isinstance(timestamp, bool):
        return datetime.fromtimestamp(timestamp, tz=UTC)
    raw = entry.get("date")
    if isinstance(raw, str) and raw.strip():
        normalized = raw.strip().replace(" ", "T", 1)
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


def parse_delivery_events(payload: Any) -> list[DeliveryChange]:
    """Translate a Brevo webhook payload (one object or a list) into delivery changes."""
    entries = payload if isinstance(payload, list) else [payload]
    changes: list[DeliveryChange] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        campaign_id = entry.get("camp_id", entry.get("campaignId"))
        event_name = entry.get("event")
        if campaign_id is None or not isinstance(event_name, str) or not event_name:
            logger.debug("Ignoring Brevo webhook entry without campaign id or event: %r", entry)
            continue
        email = entry.get("email")
        changes.append(
            DeliveryChange(
                campaign_id=str(campaign_id),
                event=event_name,
                email=email if isinstance(email, str) else None,
                occurred_at=_parse_occurred_at(entry),
                payload=entry,
            )
        )
    return changes


class EmailProvider(SyncProvider):
    """Push-only Brevo email campaign adapter."""

    provider_type = ProviderType.EMAIL
    supports_webhooks = True
    supported_entity_types = frozenset({EntityType.EVENT, EntityType.ANNOUNCEMENT})

    def __init__(self, context: ProviderContext) -> None:
        super().__init__(context)
        self._api_key: str | None = None

    @property
    def name(self) -> str:
        return "E-Mail (Brevo)"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        self._api_key = self._require_env("BREVO_API_KEY")["BREVO_API_KEY"]
        if not self.settings.recipient_email and not self.settings.list_ids:
            raise ProviderConfigurationError(
                "Email provider requires recipientEmail or listIds in the sync config settings"
            )
        response = await self._brevo_response("initialize", "GET", "/account")
        if response.status_code in (401, 403):
            raise ProviderAuthError("Brevo rejected the configured BREVO_API_KEY")
        self._raise_for_status(response, "initialize")

    async def validate_connection(self) -> bool:
        if self._api_key is None:
            return False
        try:
            await self._brevo_request("validate", "GET", "/account")
        except SyncError:
            return False
        return True

    async def _brevo_response(self, operation: str, method: str, path: str, **kwargs: Any):
        headers = {"api-key": self._api_key or "", "Accept": "application/json"}
        return await self._send(
            operation, method, f"{BREVO_API_BASE_URL}{path}", headers=headers, **kwargs
        )

    async def _brevo_request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> dict[str, Any]:
        response = await self._brevo_response(operation, method, path, **kwargs)
        self._raise_for_status(response, operation)
        if response.status_code == 204 or not response.content:
            return {}
        return self._json_object(response, operation)

    # -- push ----------------------------------------------------------------

    async def _sender(self) -> dict[str, str]:
        settings = self.settings
        if settings.sender_email:
            return {
                "name": settings.sender_name or settings.sender_email,
                "email": settings.sender_email,
            }
        owner = await self._context.users.get_user(self.config.user_id)
        if owner is None:
            raise ProviderConfigurationError(
                f"No sender configured and owner {self.config.user_id} is unknown"
            )
        return {"name": settings.sender_name or owner.name, "email": owner.email}

    def _recipients(self, event: ExternalEvent) -> list[dict[str, str]]:
        recipients: list[dict[str, str]] = []
        seen: set[str] = set()
        if self.settings.recipient_email:
            recipients.append({"email": self.settings.recipient_email})
            seen.add(self.settings.recipient_email.lower())
        for attendee in event.attendees:
            key = attendee.email.lower()
            if key in seen:
                continue
            seen.add(key)
            entry = {"email": attendee.email}
            if attendee.display_name:
                entry["name"] = attendee.display_name
            recipients.append(entry)
        return recipients

    async def _contact_for(self, event_id: str | None, sender: dict[str, str]) -> ResolvedContact:
        if event_id is not None:
            resolved = await self._context.contacts.resolve_primary_contact(event_id)
            if resolved is not None:
                return resolved
        return ResolvedContact(name=sender["name"], email=sender["email"])

    async def push_event(self, event: ExternalEvent) -> PushResult:
        is_announcement = event.metadata.get("entity_type") == EntityType.ANNOUNCEMENT
        event_id = None if is_announcement else event.app_event_id
        sender = await self._sender()
        contact = await self._contact_for(event_id, sender)

        calendar_url = None
        attachments: list[dict[str, str]] = []
        if event_id is not None:
            calendar_url = await self._context.assets.calendar_file_url(event_id)
            for attachment in await self._context.assets.email_attachments(
                event_id,
                include_ics=self.settings.attach_ics,
                include_qr=self.settings.attach_qr,
            ):
                attachments.append({"name": attachment.name, "content": attachment.content})

        body_html, body_text = render_event_email(
            event, contact, is_announcement=is_announcement, calendar_url=calendar_url
        )
        recipients = self._recipients(event)
        subject_prefix = "Neue Mitteilung" if is_announcement else "Neue Veranstaltung"
        campaign: dict[str, Any] = {
            "name": f"Event: {event.summary}",
            "subject": f"{subject_prefix}: {event.summary}",
            "sender": sender,
            "htmlContent": body_html,
            "textContent": body_text,
            "recipients": recipients,
            "tracking": {"opens": True, "clicks": True, "unsubscriptions": True},
        }
        if self.settings.list_ids:
            campaign["listIds"] = list(self.settings.list_ids)
        if attachments:
            campaign["attachment"] = attachments

        created = await self._brevo_request("push", "POST", "/emailCampaigns", json=campaign)
        campaign_id = created.get("id")
        if campaign_id is None:
            raise ProviderDataError("Brevo did not return an id for the created campaign")
        await self._brevo_request("push", "POST", f"/emailCampaigns/{campaign_id}/sendNow")
        logger.info(
            "Sent Brevo campaign %s for %r to %d recipient(s)",
            campaign_id,
            event.summary,
            len(recipients),
        )
        return PushResult(external_id=str(campaign_id), etag=utc_now().isoformat())

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Send a fresh campaign; sent emails cannot be edited."""
        result = await self.push_event(event)
        return UpdateResult(etag=result.etag)

    async def delete_event(self, external_id: str) -> None:
        logger.warning(
            "Email provider cannot retract sent campaign %s; ignoring delete", external_id
        )

    # -- webhooks ------------------------------------------------------------

    async def setup_webhook(self, callback_url: str) -> WebhookRegistration:
        payload = await self._brevo_request(
            "setup_webhook",
            "POST",
            "/webhooks",
            json={
                "type": "marketing",
                "events": list(BREVO_WEBHOOK_EVENTS),
                "url": callback_url,
                "description": f"Webhook for sync config {self.config.id}",
            },
        )
        webhook_id = payload.get("id")
        if webhook_id is None:
            raise ProviderDataError("Brevo did not return an id for the created webhook")
        return WebhookRegistration(
            resource_id=str(webhook_id),
            channel_id=str(webhook_id),
            expires_at=utc_now() + BREVO_WEBHOOK_LIFETIME,
        )

    async def renew_webhook(
        self, subscription: WebhookSubscription, callback_url: str
    ) -> WebhookRegistration:
        return WebhookRegistration(
            resource_id=subscription.resource_id,
            channel_id=subscription.channel_id,
            expires_at=utc_now() + BREVO_WEBHOOK_LIFETIME,
        )

    async def cancel_webhook(self, subscription: WebhookSubscription) -> None:
        try:
            await self._brevo_request(
                "cancel_webhook", "DELETE", f"/webhooks/{subscription.resource_id}"
            )
        except SyncError:
            logger.warning(
                "Failed to cancel Brevo webhook %s", subscription.resource_id, exc_info=True
            )

    async def process_webhook(self, payload: Any) -> WebhookProcessResult:
        return WebhookProcessResult(delivery_changes=parse_delivery_events(payload))
