"""Fire-and-forget task runner with an error boundary.

Webhook handlers and push triggers must return before the sync work they
start has finished.  ``BackgroundTaskRunner.spawn`` schedules a coroutine,
keeps a strong reference to the task until it finishes, and logs (without
re-raising) any exception it ends with.  ``shutdown`` waits for in-flight
tasks up to a timeout, then cancels the rest.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any] | None:
        """Schedule *coro*; returns None (and closes it) after ``shutdown``."""
        if self._closed:
            logger.warning("Background runner is shut down; dropping task %s", name)
            coro.close()
            return None
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled", name)
            raise
        except Exception:
            logger.exception("Background task %s failed", name)

    async def join(self) -> None:
        """Wait for every task spawned so far, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        self._closed = True
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Cancelled %d background task(s) still running after %.1fs",
                len(pending),
                timeout_s,
            )
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Background runner stopped: finished=%d", len(done))
