"""Request and response models for the sync HTTP API.

Errors follow ``{"error": {"code": "...", "message": "..."}}``; successful
responses return the sync domain models directly.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from eventsync.sync.types import WebhookDispatch, WebhookStatus, WebhookSubscription


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class PushRequest(BaseModel):
    """Body of ``POST /api/sync/users/{user_id}/push``.

    An empty ``event_ids`` list schedules a full push pass for every push
    configuration of the user.
    """

    event_ids: list[str] = Field(default_factory=list)


class PushAccepted(BaseModel):
    accepted: bool = True
    event_ids: list[str] = Field(default_factory=list)


class WebhookSetupResponse(BaseModel):
    supported: bool
    subscription: WebhookSubscription | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    providers: list[str] = Field(default_factory=list)


__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "HealthResponse",
    "PushAccepted",
    "PushRequest",
    "WebhookDispatch",
    "WebhookSetupResponse",
    "WebhookStatus",
]
