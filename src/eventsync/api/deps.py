"""FastAPI dependencies resolving the process-wide sync runtime from app state."""

from __future__ import annotations

from fastapi import Depends, Request

from eventsync.core.tasks import BackgroundTaskRunner
from eventsync.realtime import EventChangeBroadcaster
from eventsync.runtime import SyncRuntime
from eventsync.sync.service import SyncService


def get_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Sync runtime not initialized")
    return runtime


def get_sync_service(runtime: SyncRuntime = Depends(get_runtime)) -> SyncService:
    return runtime.service


def get_broadcaster(runtime: SyncRuntime = Depends(get_runtime)) -> EventChangeBroadcaster:
    return runtime.broadcaster


def get_runner(runtime: SyncRuntime = Depends(get_runtime)) -> BackgroundTaskRunner:
    return runtime.runner
