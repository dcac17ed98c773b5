"""Sync endpoints: provider webhooks, manual passes, subscriptions and change stream."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from starlette.responses import StreamingResponse

from eventsync.api.deps import get_broadcaster, get_runner, get_sync_service
from eventsync.api.models import (
    PushAccepted,
    PushRequest,
    WebhookDispatch,
    WebhookSetupResponse,
    WebhookStatus,
)
from eventsync.core.tasks import BackgroundTaskRunner
from eventsync.realtime import EventChangeBroadcaster
from eventsync.sync.service import SyncService
from eventsync.sync.types import SyncResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

KEEPALIVE_SECONDS = 30.0


async def _read_payload(request: Request) -> Any:
    """Parse a JSON body; push notifications without a body yield their channel headers."""
    body = await request.body()
    if body:
        try:
            return json.loads(body)
        except ValueError:
            logger.info("Ignoring non-JSON webhook body on %s", request.url.path)
            return None
    headers = {
        key: value for key, value in request.headers.items() if key.startswith("x-goog-")
    }
    return headers or None


@router.post("/webhook/{provider_type}", response_model=WebhookDispatch)
async def receive_webhook(
    provider_type: str,
    request: Request,
    service: SyncService = Depends(get_sync_service),
) -> WebhookDispatch:
    """Acknowledge a provider notification; processing and syncing run in the background."""
    payload = await _read_payload(request)
    return await service.handle_webhook(provider_type, payload)


@router.post("/configs/{config_id}/run", response_model=SyncResult)
async def run_sync(
    config_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncResult:
    return await service.sync(config_id)


@router.post("/configs/{config_id}/webhook", response_model=WebhookSetupResponse)
async def setup_webhook(
    config_id: str,
    service: SyncService = Depends(get_sync_service),
) -> WebhookSetupResponse:
    subscription = await service.setup_webhook(config_id)
    return WebhookSetupResponse(supported=subscription is not None, subscription=subscription)


@router.delete("/configs/{config_id}/webhook", status_code=204)
async def remove_webhook(
    config_id: str,
    service: SyncService = Depends(get_sync_service),
) -> Response:
    await service.remove_webhook(config_id)
    return Response(status_code=204)


@router.get("/configs/{config_id}/webhook", response_model=WebhookStatus)
async def webhook_status(
    config_id: str,
    service: SyncService = Depends(get_sync_service),
) -> WebhookStatus:
    return await service.check_webhook_status(config_id)


@router.post("/users/{user_id}/push", status_code=202, response_model=PushAccepted)
async def push_events(
    user_id: str,
    body: PushRequest,
    service: SyncService = Depends(get_sync_service),
    runner: BackgroundTaskRunner = Depends(get_runner),
) -> PushAccepted:
    """Schedule a targeted push for *event_ids*, or a full push when the list is empty."""
    if body.event_ids:
        runner.spawn(
            service.sync_specific_events(user_id, body.event_ids), name=f"push-events-{user_id}"
        )
    else:
        runner.spawn(service.trigger_push_sync(user_id), name=f"push-all-{user_id}")
    return PushAccepted(event_ids=body.event_ids)


async def change_stream(
    request: Request,
    broadcaster: EventChangeBroadcaster,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted change messages until the client disconnects."""
    queue = broadcaster.subscribe()
    try:
        yield f"event: connected\ndata: {json.dumps({'status': 'ok'})}\n\n"

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                yield f"event: {message.channel}\ndata: {json.dumps(message.payload())}\n\n"
            except TimeoutError:
                yield ": keepalive\n\n"
    finally:
        broadcaster.unsubscribe(queue)


@router.get("/changes")
async def stream_changes(
    request: Request,
    broadcaster: EventChangeBroadcaster = Depends(get_broadcaster),
) -> StreamingResponse:
    """Server-Sent Events stream of event and announcement changes.

    Event names are the channel (``event-changes`` / ``announcement-changes``);
    data is ``{"type", "ids", "timestamp"}``.
    """
    return StreamingResponse(
        change_stream(request, broadcaster),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
