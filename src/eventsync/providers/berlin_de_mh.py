"""berlin.de Kalender admin panel (Marzahn-Hellersdorf district).

The admin panel is a cookie-session web application.  Creating an event
means asking for a fresh edit id and then submitting each page of the
multi-page editor in order.  Nothing is transactional: a failure midway
leaves a partially filled draft behind on the remote side.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from urllib.parse import urlparse

from eventsync.providers.base import SyncProvider, utc_now
from eventsync.providers.forms import (
    BROWSER_USER_AGENT,
    is_free,
    local_end,
    local_start,
    resolve_submitter,
)
from eventsync.sync.errors import (
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderDataError,
    SyncError,
)
from eventsync.sync.types import (
    ExternalEvent,
    ProviderType,
    PushResult,
    SyncConfiguration,
    UpdateResult,
)

logger = logging.getLogger(__name__)

BERLIN_DE_ADMIN_URL = "https://www.berlin.de/land/kalender/admin/index.php"
EXTERNAL_ID_PREFIX = "berlin-de-mh-"

_EDIT_ID_PATTERN = re.compile(r"editid=(\d+)")
_FORM_HEADERS = {"User-Agent": BROWSER_USER_AGENT}


def edit_url(edit_id: str, edit_action: str) -> str:
    return (
        f"{BERLIN_DE_ADMIN_URL}?modul=veranstaltungen&action=edit"
        f"&editid={edit_id}&edit_action={edit_action}"
    )


def edit_id_from_external_id(external_id: str) -> str | None:
    if external_id.startswith(EXTERNAL_ID_PREFIX):
        candidate = external_id[len(EXTERNAL_ID_PREFIX) :]
        if candidate.isdigit():
            return candidate
    return None


class BerlinDeMhCalendarProvider(SyncProvider):
    provider_type = ProviderType.BERLIN_DE_MH_CALENDAR

    def __init__(self, context) -> None:
        super().__init__(context)
        self._username = ""
        self._password = ""
        self._logged_in = False

    @property
    def name(self) -> str:
        return "Berlin.de (Marzahn-Hellersdorf Calendar)"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        credentials = config.credentials
        env = self._context.env
        self._username = (
            credentials.get("username")
            or self.settings.username
            or env.get("BERLIN_DE_USERNAME")
            or ""
        )
        self._password = (
            credentials.get("password")
            or self.settings.password
            or env.get("BERLIN_DE_PASSWORD")
            or ""
        )
        if not self._username or not self._password:
            raise ProviderConfigurationError(
                f"{self.name}: credentials (username, password) are required"
            )

    async def validate_connection(self) -> bool:
        try:
            await self._login()
        except SyncError:
            return False
        return True

    # -- session -------------------------------------------------------------

    async def _login(self) -> None:
        response = await self._send(
            "login",
            "POST",
            BERLIN_DE_ADMIN_URL,
            data={
                "loginusername": self._username,
                "loginpassword": self._password,
                "loginusergroup": "0",
            },
            headers=_FORM_HEADERS,
            follow_redirects=False,
        )
        if response.status_code >= 400:
            self._raise_for_status(response, "login")
        if not self._http_client.cookies:
            raise ProviderAuthError(f"{self.name}: login failed, no session cookie received")
        self._logged_in = True

    async def _post_page(
        self, edit_id: str, edit_action: str, data: dict[str, str], **kwargs
    ) -> None:
        response = await self._send(
            f"edit_{edit_action}",
            "POST",
            edit_url(edit_id, edit_action),
            data=data,
            headers=_FORM_HEADERS,
            follow_redirects=True,
            **kwargs,
        )
        self._raise_for_status(response, f"edit_{edit_action}")

    async def _create_draft(self) -> str:
        response = await self._send(
            "create",
            "GET",
            f"{BERLIN_DE_ADMIN_URL}?modul=veranstaltungen&action=new",
            headers=_FORM_HEADERS,
            follow_redirects=True,
        )
        self._raise_for_status(response, "create")
        match = _EDIT_ID_PATTERN.search(str(response.url)) or _EDIT_ID_PATTERN.search(
            response.text
        )
        if match is None:
            raise ProviderDataError(f"{self.name}: failed to create event, no editid in response")
        return match.group(1)

    # -- editor pages --------------------------------------------------------

    async def _submit_pages(self, edit_id: str, event: ExternalEvent) -> None:
        await self._post_page(
            edit_id,
            "overview",
            {"update_draft": "0", "update_gratis": "1" if is_free(event.ticket_price) else "0"},
        )
        await self._post_page(
            edit_id,
            "text",
            {
                "update_name": event.summary,
                "update_beschreibung": event.description or event.summary,
            },
        )
        await self._post_page(edit_id, "details", {"update_bezirk": self.settings.district})
        await self._submit_date(edit_id, event)
        await self._submit_web(edit_id, event)
        await self._submit_image(edit_id, event)

    async def _submit_date(self, edit_id: str, event: ExternalEvent) -> None:
        start_day, start_time = local_start(event)
        if start_day is None:
            logger.warning("Event %r has no start; skipping date page", event.summary)
            return
        await self._post_page(edit_id, "date", {"update_terminmodus": "1"})
        data = {"neuer_termin": "1", "datetag_von": start_day.strftime("%d.%m.%Y")}
        if start_time is not None:
            data["uhrzeit_von"] = start_time
            _, end_time = local_end(event)
            if end_time is not None:
                data["uhrzeit_bis_nutzen"] = "1"
                data["uhrzeit_bis"] = end_time
        await self._post_page(edit_id, "date", data)

    async def _submit_web(self, edit_id: str, event: ExternalEvent) -> None:
        data: dict[str, str] = {}
        contact = await resolve_submitter(self._context, self.config, event)
        if contact.email:
            data["update_email"] = contact.email
        homepage = event.source_url
        if homepage is None and event.app_event_id:
            homepage = f"{self._context.base_url.rstrip('/')}/events/{event.app_event_id}"
        if homepage:
            data["update_homepage"] = homepage
        if data:
            await self._post_page(edit_id, "web", data)

    async def _submit_image(self, edit_id: str, event: ExternalEvent) -> None:
        if event.image is None:
            return
        try:
            image = await self._send("image", "GET", event.image.url, follow_redirects=True)
            if not image.is_success:
                logger.warning(
                    "Could not fetch image %s (%s); skipping upload",
                    event.image.url,
                    image.status_code,
                )
                return
            filename = PurePosixPath(urlparse(event.image.url).path).name or "event-image.jpg"
            await self._post_page(
                edit_id,
                "image",
                {
                    "update_dateitext": event.image.title or event.summary,
                    "update_bildunterschrift": event.image.title or "",
                    "update_dateicopy": "",
                },
                files={"userfile": (filename, image.content)},
            )
        except SyncError:
            logger.warning(
                "%s: image upload failed for edit id %s", self.name, edit_id, exc_info=True
            )

    # -- operations ----------------------------------------------------------

    async def push_event(self, event: ExternalEvent) -> PushResult:
        await self._login()
        edit_id = await self._create_draft()
        await self._submit_pages(edit_id, event)
        logger.info("Created berlin.de admin entry %s for %r", edit_id, event.summary)
        return PushResult(external_id=f"{EXTERNAL_ID_PREFIX}{edit_id}", etag=utc_now().isoformat())

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Re-submit every editor page for the existing edit id."""
        edit_id = edit_id_from_external_id(external_id)
        if edit_id is None:
            logger.warning("Unrecognised berlin.de admin id %s; creating a new entry", external_id)
            await self.push_event(event)
            return UpdateResult(etag=utc_now().isoformat())
        await self._login()
        await self._submit_pages(edit_id, event)
        return UpdateResult(etag=utc_now().isoformat())

    async def delete_event(self, external_id: str) -> None:
        logger.warning("%s does not support deletion; ignoring %s", self.name, external_id)
