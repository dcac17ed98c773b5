"""Provider adapter contract.

Each adapter wraps one external service.  The orchestrator builds a fresh
adapter per pass through the registry, calls ``initialize`` with the
configuration, consults the capability flags, and always calls ``shutdown``
afterwards.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from eventsync.config import DEFAULT_BASE_URL, SyncTuning
from eventsync.sync.errors import (
    ProviderConfigurationError,
    ProviderRequestError,
    UnsupportedOperationError,
    safe_response_message,
)
from eventsync.sync.settings import parse_settings
from eventsync.sync.store import AssetProvider, ContactDirectory, UserDirectory
from eventsync.sync.types import (
    EntityType,
    ExternalEvent,
    ProviderType,
    PullResult,
    PushResult,
    SyncConfiguration,
    SyncDirection,
    UpdateResult,
    WebhookProcessResult,
    WebhookRegistration,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

USER_AGENT = "eventsync/0.1"

TokensRefreshedCallback = Callable[[SyncConfiguration, dict[str, Any]], Awaitable[None]]


def _default_http_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT})


@dataclass
class ProviderContext:
    """Dependencies shared by every adapter instance."""

    users: UserDirectory
    contacts: ContactDirectory
    assets: AssetProvider
    env: Mapping[str, str]
    tuning: SyncTuning = field(default_factory=SyncTuning)
    base_url: str = DEFAULT_BASE_URL
    http_client_factory: Callable[[float], httpx.AsyncClient] = _default_http_client_factory
    on_tokens_refreshed: TokensRefreshedCallback | None = None

    def webhook_callback_url(self, provider_type: ProviderType | str) -> str:
        return f"{self.base_url.rstrip('/')}/api/sync/webhook/{provider_type}"


class SyncProvider(abc.ABC):
    """Uniform contract over one external calendar or listing service."""

    provider_type: ClassVar[ProviderType]
    supports_webhooks: ClassVar[bool] = False
    supported_directions: ClassVar[frozenset[SyncDirection]] = frozenset({SyncDirection.PUSH})
    supported_entity_types: ClassVar[frozenset[EntityType]] = frozenset({EntityType.EVENT})

    def __init__(self, context: ProviderContext) -> None:
        self._context = context
        self._config: SyncConfiguration | None = None
        self._settings: Any = None
        self._http_client = context.http_client_factory(context.tuning.http_timeout_seconds)

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g. ``Google Calendar``)."""
        ...

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self, config: SyncConfiguration) -> None:
        """Validate credentials and settings for *config*.

        Subclasses extend this with their own credential checks and must call
        ``super().initialize(config)`` first.

        Raises
        ------
        ProviderConfigurationError
            If required credentials or settings are missing.
        """
        if config.provider_type != self.provider_type:
            raise ProviderConfigurationError(
                f"{self.name} cannot serve a {config.provider_type} configuration"
            )
        self._settings = parse_settings(self.provider_type, config.settings)
        self._config = config

    async def validate_connection(self) -> bool:
        """Return True when the provider is reachable with the current credentials."""
        return True

    async def shutdown(self) -> None:
        await self._http_client.aclose()

    def supports_direction(self, direction: SyncDirection) -> bool:
        if direction is SyncDirection.BIDIRECTIONAL:
            return SyncDirection.BIDIRECTIONAL in self.supported_directions or (
                SyncDirection.PULL in self.supported_directions
                and SyncDirection.PUSH in self.supported_directions
            )
        return (
            direction in self.supported_directions
            or SyncDirection.BIDIRECTIONAL in self.supported_directions
        )

    @property
    def can_pull(self) -> bool:
        return self.supports_direction(SyncDirection.PULL)

    @property
    def can_push(self) -> bool:
        return self.supports_direction(SyncDirection.PUSH)

    # -- event operations ----------------------------------------------------

    async def pull_events(self, sync_token: str | None = None) -> PullResult:
        raise UnsupportedOperationError(self.name, "pulling events")

    @abc.abstractmethod
    async def push_event(self, event: ExternalEvent) -> PushResult:
        """Create *event* remotely."""
        ...

    @abc.abstractmethod
    async def update_event(self, external_id: str, event: ExternalEvent) -> UpdateResult:
        """Update the remote record *external_id*."""
        ...

    @abc.abstractmethod
    async def delete_event(self, external_id: str) -> None:
        """Delete the remote record *external_id*."""
        ...

    # -- webhooks ------------------------------------------------------------

    async def setup_webhook(self, callback_url: str) -> WebhookRegistration:
        raise UnsupportedOperationError(self.name, "webhooks")

    async def renew_webhook(
        self, subscription: WebhookSubscription, callback_url: str
    ) -> WebhookRegistration:
        raise UnsupportedOperationError(self.name, "webhooks")

    async def cancel_webhook(self, subscription: WebhookSubscription) -> None:
        raise UnsupportedOperationError(self.name, "webhooks")

    async def process_webhook(self, payload: Any) -> WebhookProcessResult:
        """Interpret an inbound webhook payload; most adapters leave it to a pull."""
        return WebhookProcessResult()

    # -- helpers -------------------------------------------------------------

    @property
    def config(self) -> SyncConfiguration:
        if self._config is None:
            raise ProviderConfigurationError(f"{self.name} provider not initialized")
        return self._config

    @property
    def settings(self) -> Any:
        if self._settings is None:
            raise ProviderConfigurationError(f"{self.name} provider not initialized")
        return self._settings

    def _require_env(self, *names: str) -> dict[str, str]:
        values: dict[str, str] = {}
        missing: list[str] = []
        for env_name in names:
            value = (self._context.env.get(env_name) or "").strip()
            if value:
                values[env_name] = value
            else:
                missing.append(env_name)
        if missing:
            raise ProviderConfigurationError(
                f"{self.name}: missing environment variable(s): {', '.join(missing)}"
            )
        return values

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, translating transport errors into ``ProviderRequestError``."""
        try:
            return await self._http_client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                status_code=None,
                provider=self.name,
                operation=operation,
                message=str(exc) or type(exc).__name__,
            ) from exc

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                provider=self.name,
                operation=operation,
                message=safe_response_message(response),
            )

    def _json_object(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=response.status_code,
                provider=self.name,
                operation=operation,
                message="response body is not valid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                provider=self.name,
                operation=operation,
                message="unexpected JSON payload shape",
            )
        return payload


def utc_now() -> datetime:
    return datetime.now(UTC)


def event_start_utc(event: ExternalEvent) -> datetime | None:
    """Timed start in UTC, or midnight UTC of the all-day start date."""
    if event.start_datetime is not None:
        return event.start_datetime.astimezone(UTC)
    if event.start_date is not None:
        return datetime(
            event.start_date.year, event.start_date.month, event.start_date.day, tzinfo=UTC
        )
    return None


def event_local_start(event: ExternalEvent) -> datetime | None:
    """Timed start converted to the event's own timezone when known."""
    if event.start_datetime is None:
        return None
    return to_local(event.start_datetime, event.start_timezone)


def to_local(value: datetime, timezone: str | None) -> datetime:
    if not timezone:
        return value
    try:
        return value.astimezone(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        return value
