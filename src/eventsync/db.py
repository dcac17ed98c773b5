"""asyncpg pool for the sync tables and environment-derived connection params."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

import asyncpg

if TYPE_CHECKING:
    from eventsync.config import DatabaseConfig

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})

# asyncpg raises this when a server refuses the implicit STARTTLS upgrade.
_STARTTLS_LOST = "unexpected connection_lost() call"


def ssl_mode(value: str | None) -> str | None:
    """Lower-cased sslmode, or None when unset or not a libpq mode."""
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


def db_params_from_env(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Connection params from ``DATABASE_URL``, else the ``POSTGRES_*`` variables."""
    environ = os.environ if env is None else env
    url = environ.get("DATABASE_URL")
    if url:
        parts = urlsplit(url)
        return {
            "host": parts.hostname or "localhost",
            "port": parts.port or 5432,
            "user": parts.username or "eventsync",
            "password": parts.password or "eventsync",
            "database": parts.path.lstrip("/") or None,
            "ssl": ssl_mode(parse_qs(parts.query).get("sslmode", [None])[0]),
        }
    return {
        "host": environ.get("POSTGRES_HOST", "localhost"),
        "port": int(environ.get("POSTGRES_PORT", "5432")),
        "user": environ.get("POSTGRES_USER", "eventsync"),
        "password": environ.get("POSTGRES_PASSWORD", "eventsync"),
        "database": environ.get("POSTGRES_DB"),
        "ssl": ssl_mode(environ.get("POSTGRES_SSLMODE")),
    }


class Database:
    """Owns the asyncpg pool and proxies the query methods the stores use."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(config)

    @property
    def name(self) -> str:
        return self.config.name

    async def connect(self) -> asyncpg.Pool:
        cfg = self.config
        kwargs: dict[str, Any] = {
            "host": cfg.host,
            "port": cfg.port,
            "user": cfg.user,
            "password": cfg.password,
            "database": cfg.name,
            "min_size": cfg.min_pool_size,
            "max_size": cfg.max_pool_size,
        }
        ssl = ssl_mode(cfg.ssl)
        if ssl is not None:
            kwargs["ssl"] = ssl
        try:
            self.pool = await asyncpg.create_pool(**kwargs)
        except ConnectionError as exc:
            # Only an unconfigured sslmode falls back to a plain connection.
            if ssl is not None or _STARTTLS_LOST not in str(exc):
                raise
            logger.info("Server dropped the SSL upgrade; reconnecting to %s with ssl=disable",
                        cfg.name)
            self.pool = await asyncpg.create_pool(**kwargs, ssl="disable")
        logger.info("Connected to database %s at %s:%s", cfg.name, cfg.host, cfg.port)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed connection pool for %s", self.name)

    def _pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database {self.name!r} is not connected")
        return self.pool

    def acquire(self) -> Any:
        """``async with db.acquire() as conn`` for transactions."""
        return self._pool().acquire()

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self._pool().fetchrow(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._pool().execute(query, *args)
