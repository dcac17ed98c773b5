"""Periodic driver for due sync passes and the webhook renewal sweep."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from eventsync.sync.service import SyncService
from eventsync.sync.types import SyncResult

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    results: list[SyncResult] = field(default_factory=list)
    webhooks_renewed: int = 0


class SyncScheduler:
    """Every ``poll_seconds``: run due passes, then renew expiring webhooks."""

    def __init__(self, service: SyncService, poll_seconds: int = 60) -> None:
        self._service = service
        self._poll_seconds = poll_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> TickSummary:
        """One scheduler tick; failures are logged and never escape."""
        now = now or datetime.now(UTC)
        summary = TickSummary()
        try:
            summary.results = await self._service.run_due(now)
        except Exception:
            logger.exception("Failed to run due sync passes")
        try:
            summary.webhooks_renewed = await self._service.renew_webhooks()
        except Exception:
            logger.exception("Webhook renewal sweep failed")
        return summary

    def start(self) -> None:
        if self.running:
            logger.warning("Sync scheduler already running")
            return
        self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
        logger.info("Sync scheduler started: poll_seconds=%d", self._poll_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await self.run_once()
                await asyncio.sleep(self._poll_seconds)
        except asyncio.CancelledError:
            logger.debug("Sync scheduler loop cancelled")
            raise
