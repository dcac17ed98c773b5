"""Error taxonomy for the sync engine and provider adapters.

Every adapter failure is raised as a ``SyncError`` subclass so the
orchestrator can turn it into an error-list entry without inspecting
provider-specific exception types.  ``sanitize_error_message`` is applied
before any message is persisted or returned over the API.
"""

from __future__ import annotations

import re
from typing import Any

import httpx

_MAX_ERROR_MESSAGE_LENGTH = 200

_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|api[-_]key|password|token"


class SyncError(RuntimeError):
    """Base error for sync orchestration and provider adapters."""


class SyncConfigNotFoundError(SyncError):
    """Raised when a sync configuration id does not resolve to a row."""

    def __init__(self, config_id: str) -> None:
        self.config_id = config_id
        super().__init__(f"Sync configuration not found: {config_id}")


class SyncConfigDisabledError(SyncError):
    """Raised when a pass is requested for a disabled configuration."""

    def __init__(self, config_id: str) -> None:
        self.config_id = config_id
        super().__init__(f"Sync configuration is disabled: {config_id}")


class UnknownProviderError(SyncError):
    """Raised when no adapter is registered for a provider type."""

    def __init__(self, provider_type: str) -> None:
        self.provider_type = provider_type
        super().__init__(f"Unknown provider type: {provider_type}")


class ProviderConfigurationError(SyncError):
    """Raised by ``initialize`` when credentials or settings are missing or invalid."""


class ProviderAuthError(SyncError):
    """Raised when authentication against a provider fails."""


class ReconnectRequiredError(ProviderAuthError):
    """Raised when stored credentials can no longer be refreshed; the user must reconnect."""


class UnsupportedOperationError(SyncError):
    """Raised when an operation is invoked on an adapter that does not support it."""

    def __init__(self, provider: str, operation: str) -> None:
        self.provider = provider
        self.operation = operation
        super().__init__(f"{provider} does not support {operation}")


class ProviderRequestError(SyncError):
    """Raised when a provider API request fails."""

    def __init__(
        self,
        *,
        status_code: int | None,
        provider: str,
        operation: str,
        message: str,
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        self.operation = operation
        self.message = message
        status = status_code if status_code is not None else "network"
        super().__init__(f"{provider} {operation} request failed ({status}): {message}")


class SyncTokenExpiredError(SyncError):
    """Raised when a sync token is expired or invalid; caller should do a full sync."""


class ProviderDataError(SyncError):
    """Raised when a provider returns a payload that cannot be mapped."""


def safe_response_message(response: httpx.Response) -> str:
    """Extract a short, human-readable error message from an HTTP error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_ERROR_MESSAGE_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:_MAX_ERROR_MESSAGE_LENGTH]
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:_MAX_ERROR_MESSAGE_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:_MAX_ERROR_MESSAGE_LENGTH]
    return response.reason_phrase or "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str) -> str:
    """Redact, whitespace-normalize and truncate an error for persistence."""
    raw = exc if isinstance(exc, str) else str(exc) or type(exc).__name__
    return " ".join(redact_credential_values(raw).split())[:_MAX_ERROR_MESSAGE_LENGTH]


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Build a structured, sanitized description of an exception."""
    detail: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "message": sanitize_error_message(exc),
    }
    if isinstance(exc, ProviderRequestError):
        detail["status_code"] = exc.status_code
        detail["provider"] = exc.provider
        detail["operation"] = exc.operation
    return detail
