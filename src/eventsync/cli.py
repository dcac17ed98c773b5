"""CLI for eventsync: serve the API, run passes and maintain webhooks."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import uvicorn

from eventsync.config import AppConfig, ConfigError, load_config
from eventsync.core.logging import configure_logging
from eventsync.runtime import SyncRuntime, build_runtime
from eventsync.sync.errors import SyncError

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


async def _with_runtime(config: AppConfig, action: Callable[[SyncRuntime], Awaitable[Any]]) -> Any:
    runtime = await build_runtime(config)
    try:
        result = await action(runtime)
        await runtime.runner.join()
        return result
    finally:
        await runtime.aclose()


def _run(config: AppConfig, action: Callable[[SyncRuntime], Awaitable[Any]]) -> Any:
    try:
        return asyncio.run(_with_runtime(config, action))
    except (ConfigError, SyncError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to eventsync.toml (defaults to ./eventsync.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """eventsync: calendar and event platform synchronization."""
    config = _load(config_path)
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (default: server.host)")
@click.option("--port", type=int, default=None, help="Port (default: server.port)")
@click.pass_obj
def serve(config: AppConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the background scheduler."""
    from eventsync.api.app import create_app

    uv_config = uvicorn.Config(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
        timeout_graceful_shutdown=5,
    )
    click.echo(f"eventsync listening on {uv_config.host}:{uv_config.port}")
    asyncio.run(uvicorn.Server(uv_config).serve())


@cli.command()
@click.argument("config_id")
@click.pass_obj
def sync(config: AppConfig, config_id: str) -> None:
    """Run one sync pass for CONFIG_ID and print the result as JSON."""

    async def _action(runtime: SyncRuntime):
        return await runtime.service.sync(config_id)

    result = _run(config, _action)
    click.echo(result.model_dump_json(indent=2))
    if not result.success:
        sys.exit(1)


@cli.command("renew-webhooks")
@click.pass_obj
def renew_webhooks(config: AppConfig) -> None:
    """Renew webhook subscriptions that expire within the renewal window."""

    async def _action(runtime: SyncRuntime) -> int:
        return await runtime.service.renew_webhooks()

    renewed = _run(config, _action)
    click.echo(f"Renewed {renewed} webhook subscription(s)")


@cli.command("run-due")
@click.pass_obj
def run_due(config: AppConfig) -> None:
    """Run one scheduler tick: due passes, then the renewal sweep."""

    async def _action(runtime: SyncRuntime):
        return await runtime.scheduler.run_once()

    summary = _run(config, _action)
    rows = [
        {"config_id": r.config_id, "success": r.success, "errors": len(r.errors)}
        for r in summary.results
    ]
    click.echo(json.dumps({"passes": rows, "webhooks_renewed": summary.webhooks_renewed}))


@cli.command()
@click.pass_obj
def migrate(config: AppConfig) -> None:
    """Apply the sync table migrations to the configured database."""
    from eventsync.migrations import run_migrations

    run_migrations(config.database.url)
    click.echo("Migrations applied")
