"""Tests for the periodic sync scheduler."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import pytest

from eventsync.core.scheduler import SyncScheduler
from eventsync.sync.types import SyncResult

pytestmark = pytest.mark.unit


class StubService:
    def __init__(self, *, fail_due: bool = False, fail_renew: bool = False) -> None:
        self.fail_due = fail_due
        self.fail_renew = fail_renew
        self.ticks: list[datetime] = []

    async def run_due(self, now=None):
        self.ticks.append(now)
        if self.fail_due:
            raise RuntimeError("database unavailable")
        return [SyncResult(config_id="cfg-1")]

    async def renew_webhooks(self):
        if self.fail_renew:
            raise RuntimeError("renewal exploded")
        return 2


class TestRunOnce:
    async def test_collects_results_and_renewals(self):
        service = StubService()
        now = datetime(2026, 1, 1, tzinfo=UTC)

        summary = await SyncScheduler(service).run_once(now)

        assert [r.config_id for r in summary.results] == ["cfg-1"]
        assert summary.webhooks_renewed == 2
        assert service.ticks == [now]

    async def test_due_failure_still_renews(self, caplog):
        service = StubService(fail_due=True)

        with caplog.at_level(logging.ERROR, logger="eventsync.core.scheduler"):
            summary = await SyncScheduler(service).run_once()

        assert summary.results == []
        assert summary.webhooks_renewed == 2
        assert "Failed to run due sync passes" in caplog.text

    async def test_renewal_failure_is_contained(self):
        summary = await SyncScheduler(StubService(fail_renew=True)).run_once()

        assert summary.webhooks_renewed == 0
        assert len(summary.results) == 1


class TestLoop:
    async def test_start_and_stop(self):
        service = StubService()
        scheduler = SyncScheduler(service, poll_seconds=3600)

        scheduler.start()
        scheduler.start()
        while not service.ticks:
            await asyncio.sleep(0)
        assert scheduler.running

        await scheduler.stop()

        assert not scheduler.running
        assert len(service.ticks) == 1

    async def test_stop_without_start_is_a_noop(self):
        await SyncScheduler(StubService()).stop()
