"""Typed per-provider settings.

The ``settings`` blob stored on a sync configuration is validated into one
member of the ``ProviderSettings`` discriminated union.  Keys are accepted in
either snake_case or the camelCase the host application writes.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from eventsync.sync.errors import ProviderConfigurationError
from eventsync.sync.types import ProviderType


class _SettingsBase(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    sync_interval_minutes: int | None = Field(default=None, ge=1)


class GoogleCalendarSettings(_SettingsBase):
    provider_type: Literal["google-calendar"] = Field(
        default="google-calendar", alias="provider_type"
    )
    calendar_id: str = "primary"


class EmailSettings(_SettingsBase):
    provider_type: Literal["email"] = Field(default="email", alias="provider_type")
    recipient_email: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    list_ids: list[int] = Field(default_factory=list)
    attach_ics: bool = True
    attach_qr: bool = True


class EventbriteSettings(_SettingsBase):
    provider_type: Literal["eventbrite"] = Field(default="eventbrite", alias="provider_type")
    organizer_id: str | None = None
    venue_id: str | None = None
    currency: str = "EUR"


class MeetupSettings(_SettingsBase):
    provider_type: Literal["meetup"] = Field(default="meetup", alias="provider_type")
    group_urlname: str = Field(min_length=1)
    venue_id: str | None = None


class WpEventsCalendarSettings(_SettingsBase):
    provider_type: Literal["wp-the-events-calendar"] = Field(
        default="wp-the-events-calendar", alias="provider_type"
    )
    base_url: str | None = None
    username: str | None = None
    app_password: str | None = None


class BerlinDeMainCalendarSettings(_SettingsBase):
    provider_type: Literal["berlin-de-main-calendar"] = Field(
        default="berlin-de-main-calendar", alias="provider_type"
    )
    form_url: str | None = None
    submitter_name: str | None = None
    submitter_email: str | None = None
    company: str | None = None
    category: str | None = None


class BerlinDeMhCalendarSettings(_SettingsBase):
    provider_type: Literal["berlin-de-mh-calendar"] = Field(
        default="berlin-de-mh-calendar", alias="provider_type"
    )
    username: str | None = None
    password: str | None = None
    district: str = "4"


class SeniorennetzSettings(_SettingsBase):
    provider_type: Literal["seniorennetz-berlin"] = Field(
        default="seniorennetz-berlin", alias="provider_type"
    )
    submitter_name: str | None = None
    submitter_email: str | None = None
    submitter_phone: str | None = None
    organization: str | None = None
    district: str | None = None
    category: str = "Veranstaltung"


class BewegungsatlasSettings(_SettingsBase):
    provider_type: Literal["bewegungsatlas-berlin"] = Field(
        default="bewegungsatlas-berlin", alias="provider_type"
    )
    username: str | None = None
    password: str | None = None
    category: str | None = None


ProviderSettings = Annotated[
    GoogleCalendarSettings
    | EmailSettings
    | EventbriteSettings
    | MeetupSettings
    | WpEventsCalendarSettings
    | BerlinDeMainCalendarSettings
    | BerlinDeMhCalendarSettings
    | SeniorennetzSettings
    | BewegungsatlasSettings,
    Field(discriminator="provider_type"),
]

_SETTINGS_ADAPTER: TypeAdapter[ProviderSettings] = TypeAdapter(ProviderSettings)


def parse_settings(provider_type: ProviderType | str, raw: dict[str, Any] | None) -> Any:
    """Validate a raw settings blob for *provider_type*.

    Raises
    ------
    ProviderConfigurationError
        If the blob does not satisfy the provider's settings model.
    """
    payload = dict(raw or {})
    payload["provider_type"] = str(provider_type)
    try:
        return _SETTINGS_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'][1:]) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ProviderConfigurationError(
            f"Invalid settings for provider type {provider_type}: {problems}"
        ) from exc


def sync_interval_minutes(raw: dict[str, Any] | None, default: int) -> int:
    """Return the configured sync interval from a raw settings blob."""
    if not raw:
        return default
    value = raw.get("sync_interval_minutes", raw.get("syncIntervalMinutes"))
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float) and value > 0:
        return int(value)
    return default
