"""Bewegungsatlas Berlin: event submission through a WordPress member session."""

from __future__ import annotations

import logging
import uuid

from eventsync.providers.base import SyncProvider
from eventsync.providers.forms import BROWSER_USER_AGENT, local_end, local_start, resolve_submitter
from eventsync.sync.errors import (
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderRequestError,
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

BEWEGUNGSATLAS_BASE_URL = "https://www.bewegungsatlas.berlin"
_SUCCESS_MARKERS = ("success", "erfolgreich", "Event erstellt")


class BewegungsatlasProvider(SyncProvider):
    provider_type = ProviderType.BEWEGUNGSATLAS_BERLIN

    def __init__(self, context) -> None:
        super().__init__(context)
        self._username = ""
        self._password = ""
        self._authenticated = False

    @property
    def name(self) -> str:
        return "Bewegungsatlas.Berlin"

    async def initialize(self, config: SyncConfiguration) -> None:
        await super().initialize(config)
        env = self._context.env
        self._username = self.settings.username or env.get("BEWEGUNGSATLAS_USERNAME") or ""
        self._password = self.settings.password or env.get("BEWEGUNGSATLAS_PASSWORD") or ""
        if not self._username or not self._password:
            raise ProviderConfigurationError(
                f"{self.name} credentials (username and password) are required"
            )

    async def validate_connection(self) -> bool:
        try:
            await self._ensure_authenticated()
        except SyncError:
            logger.warning("Bewegungsatlas.Berlin connection validation failed", exc_info=True)
            return False
        return True

    # -- session -------------------------------------------------------------

    async def _session_is_valid(self) -> bool:
        response = await self._send(
            "verify_session", "HEAD", f"{BEWEGUNGSATLAS_BASE_URL}/wp-admin/admin-ajax.php"
        )
        return response.is_success

    async def _ensure_authenticated(self) -> None:
        if self._authenticated and await self._session_is_valid():
            return
        await self._authenticate()

    async def _authenticate(self) -> None:
        headers = {"User-Agent": BROWSER_USER_AGENT}
        login_page = await self._send(
            "login", "GET", f"{BEWEGUNGSATLAS_BASE_URL}/anmelden/", headers=headers
        )
        self._raise_for_status(login_page, "login")

        response = await self._send(
            "login",
            "POST",
            f"{BEWEGUNGSATLAS_BASE_URL}/wp-login.php",
            data={
                "log": self._username,
                "pwd": self._password,
                "wp-submit": "Anmelden",
                "redirect_to": f"{BEWEGUNGSATLAS_BASE_URL}/wp-admin/",
                "testcookie": "1",
            },
            headers={**headers, "Referer": f"{BEWEGUNGSATLAS_BASE_URL}/anmelden/"},
            follow_redirects=False,
        )
        if response.is_redirect:
            if "wp-login.php" in response.headers.get("location", ""):
                raise ProviderAuthError(f"{self.name}: login failed, redirected back to login page")
        else:
            self._raise_for_status(response, "login")

        if not await self._session_is_valid():
            raise ProviderAuthError(f"{self.name}: authentication verification failed")
        self._authenticated = True

    # -- push ----------------------------------------------------------------

    async def build_form(self, event: ExternalEvent) -> dict[str, str]:
        form = {"event_title": event.summary}
        if event.description:
            form["event_description"] = event.description
        start_day, start_time = local_start(event)
        if start_day is not None:
            form["event_start_date"] = start_day.isoformat()
        if start_time is not None:
            form["event_start_time"] = start_time
        end_day, end_time = local_end(event)
        if end_day is not None:
            form["event_end_date"] = end_day.isoformat()
        if end_time is not None:
            form["event_end_time"] = end_time
        if event.location:
            form["event_location"] = event.location

        contact = await resolve_submitter(self._context, self.config, event)
        form["event_contact_name"] = contact.name
        form["event_contact_email"] = contact.email or ""
        if contact.phone:
            form["event_contact_phone"] = contact.phone

        category = self.settings.category or event.metadata.get("category")
        if category:
            form["event_category"] = str(category)
        target_audience = event.metadata.get("target_audience")
        if target_audience:
            form["event_target_audience"] = str(target_audience)
        if event.metadata.get("registration_required"):
            form["event_registration_required"] = "1"
        return form

    async def push_event(self, event: ExternalEvent) -> PushResult:
        await self._ensure_authenticated()
        new_event_url = f"{BEWEGUNGSATLAS_BASE_URL}/events/new"
        response = await self._send(
            "push",
            "POST",
            new_event_url,
            data=await self.build_form(event),
            headers={"User-Agent": BROWSER_USER_AGENT, "Referer": new_event_url},
            follow_redirects=False,
        )
        if response.is_redirect:
            if "events/new" in response.headers.get("location", ""):
                raise ProviderRequestError(
                    status_code=response.status_code,
                    provider=self.name,
                    operation="push",
                    message="event submission failed, redirected back to form",
                )
        else:
            self._raise_for_status(response, "push")
            if not any(marker in response.text for marker in _SUCCESS_MARKERS):
                raise ProviderRequestError(
                    status_code=response.status_code,
                    provider=self.name,
                    operation="push",
                    message="event submission failed, no success indicator found",
                )
        return PushResult(external_id=f"bewegungsatlas-{event.app_event_id or uuid.uuid4()}")

    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Submit the event again; the site has no edit endpoint."""
        await self.push_event(event)
        return UpdateResult()

    async def delete_event(self, external_id: str) -> None:
        logger.warning("%s does not support deletion; ignoring %s", self.name, external_id)
