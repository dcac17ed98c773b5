"""Process wiring: database pool, stores, host collaborators and the sync service.

The host application supplies its event, contact, user and asset
collaborators through a factory named in ``[host] factory`` (``module:callable``).
The factory receives the connected ``Database`` and returns ``HostServices``
(or an awaitable of it).
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from eventsync.config import AppConfig, ConfigError, import_host_factory
from eventsync.core.scheduler import SyncScheduler
from eventsync.core.tasks import BackgroundTaskRunner
from eventsync.db import Database
from eventsync.realtime import EventChangeBroadcaster
from eventsync.sync.postgres import PostgresSyncStore
from eventsync.sync.service import SyncService
from eventsync.sync.store import AssetProvider, ContactDirectory, EventStore, UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class HostServices:
    events: EventStore
    contacts: ContactDirectory
    users: UserDirectory
    assets: AssetProvider


HostFactory = Callable[[Database], HostServices | Awaitable[HostServices]]


@dataclass
class SyncRuntime:
    """Everything a running process holds for the sync engine."""

    service: SyncService
    broadcaster: EventChangeBroadcaster
    runner: BackgroundTaskRunner
    scheduler: SyncScheduler
    db: Database | None = None

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.runner.shutdown()
        if self.db is not None:
            await self.db.close()


async def _load_host_services(config: AppConfig, db: Database) -> HostServices:
    if not config.host_factory:
        raise ConfigError(
            "host.factory (or EVENTSYNC_HOST_FACTORY) must name the host collaborator factory"
        )
    factory: HostFactory = import_host_factory(config.host_factory)
    services = factory(db)
    if inspect.isawaitable(services):
        services = await services
    if not isinstance(services, HostServices):
        raise ConfigError(f"Host factory {config.host_factory!r} did not return HostServices")
    return services


async def build_runtime(config: AppConfig) -> SyncRuntime:
    """Connect to the database and assemble the sync service."""
    db = Database.from_config(config.database)
    await db.connect()
    try:
        host = await _load_host_services(config, db)
    except Exception:
        await db.close()
        raise

    broadcaster = EventChangeBroadcaster()
    runner = BackgroundTaskRunner()
    service = SyncService(
        store=PostgresSyncStore(db),
        events=host.events,
        contacts=host.contacts,
        users=host.users,
        assets=host.assets,
        runner=runner,
        publisher=broadcaster,
        tuning=config.sync,
        base_url=config.server.base_url,
    )
    scheduler = SyncScheduler(service, poll_seconds=config.sync.scheduler_poll_seconds)
    logger.info(
        "Sync runtime ready: providers=%s", ", ".join(service.registry.available_types)
    )
    return SyncRuntime(
        service=service, broadcaster=broadcaster, runner=runner, scheduler=scheduler, db=db
    )
