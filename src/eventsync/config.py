"""eventsync configuration loading and validation.

Reads ``eventsync.toml``, resolves ``${VAR}`` references against the
environment and returns a validated ``AppConfig`` dataclass.  A missing file
yields defaults plus environment overrides so the service can run from
environment variables alone.
"""

from __future__ import annotations

import importlib
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from eventsync.db import db_params_from_env

DEFAULT_CONFIG_PATH = Path("eventsync.toml")
DEFAULT_BASE_URL = "https://localhost:5173"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server settings from the [server] section."""

    base_url: str = DEFAULT_BASE_URL
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection settings from the [database] section."""

    name: str = "eventsync"
    host: str = "localhost"
    port: int = 5432
    user: str = "eventsync"
    password: str = "eventsync"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def url(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


@dataclass(frozen=True)
class SyncTuning:
    """Heuristic constants for reconciliation and scheduling ([sync] section)."""

    echo_guard_seconds: int = 30
    fuzzy_match_window_seconds: int = 120
    default_interval_minutes: int = 60
    webhook_renewal_window_hours: int = 24
    full_sync_past_days: int = 365
    full_sync_future_days: int = 730
    scheduler_poll_seconds: int = 60
    http_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass(frozen=True)
class AppConfig:
    """Parsed and validated eventsync configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncTuning = field(default_factory=SyncTuning)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    host_factory: str | None = None


def resolve_env_vars(value: Any, env: Mapping[str, str] | None = None) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    environ = os.environ if env is None else env
    if isinstance(value, dict):
        return {k: resolve_env_vars(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item, environ) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, environ)
    return value


def _resolve_string(s: str, env: Mapping[str, str]) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = env.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )
    return result


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | str):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_server(section: dict, env: Mapping[str, str]) -> ServerConfig:
    base_url = section.get("base_url") or env.get("APP_BASE_URL") or DEFAULT_BASE_URL
    if not isinstance(base_url, str):
        raise ConfigError("server.base_url must be a string")
    origins = section.get("cors_origins", list(ServerConfig.cors_origins))
    if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
        raise ConfigError("server.cors_origins must be a list of strings")
    return ServerConfig(
        base_url=base_url.rstrip("/"),
        host=str(section.get("host", ServerConfig.host)),
        port=_positive_int(section, "port", ServerConfig.port, "server"),
        cors_origins=tuple(origins),
    )


def _parse_database(section: dict) -> DatabaseConfig:
    params = db_params_from_env()
    return DatabaseConfig(
        name=str(section.get("name", params.get("database") or DatabaseConfig.name)),
        host=str(section.get("host", params["host"])),
        port=_positive_int(section, "port", int(params["port"] or 5432), "database"),
        user=str(section.get("user", params["user"])),
        password=str(section.get("password", params["password"])),
        ssl=section.get("ssl", params["ssl"]),
        min_pool_size=_positive_int(section, "min_pool_size", 2, "database"),
        max_pool_size=_positive_int(section, "max_pool_size", 10, "database"),
    )


def _parse_sync(section: dict) -> SyncTuning:
    defaults = SyncTuning()
    timeout_raw = section.get("http_timeout_seconds", defaults.http_timeout_seconds)
    if isinstance(timeout_raw, bool) or not isinstance(timeout_raw, int | float):
        raise ConfigError(f"Invalid sync.http_timeout_seconds: {timeout_raw!r}")
    if timeout_raw <= 0:
        raise ConfigError(f"Invalid sync.http_timeout_seconds: {timeout_raw!r}")
    return SyncTuning(
        echo_guard_seconds=_positive_int(
            section, "echo_guard_seconds", defaults.echo_guard_seconds, "sync"
        ),
        fuzzy_match_window_seconds=_positive_int(
            section, "fuzzy_match_window_seconds", defaults.fuzzy_match_window_seconds, "sync"
        ),
        default_interval_minutes=_positive_int(
            section, "default_interval_minutes", defaults.default_interval_minutes, "sync"
        ),
        webhook_renewal_window_hours=_positive_int(
            section,
            "webhook_renewal_window_hours",
            defaults.webhook_renewal_window_hours,
            "sync",
        ),
        full_sync_past_days=_positive_int(
            section, "full_sync_past_days", defaults.full_sync_past_days, "sync"
        ),
        full_sync_future_days=_positive_int(
            section, "full_sync_future_days", defaults.full_sync_future_days, "sync"
        ),
        scheduler_poll_seconds=_positive_int(
            section, "scheduler_poll_seconds", defaults.scheduler_poll_seconds, "sync"
        ),
        http_timeout_seconds=float(timeout_raw),
    )


def _parse_logging(section: dict) -> LoggingConfig:
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=str(log_root) if log_root else None,
    )


def load_config(path: Path | str | None = None, env: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from *path* (default ``eventsync.toml``).

    Raises
    ------
    ConfigError
        If the file cannot be parsed or a value is invalid.
    """
    environ = os.environ if env is None else env
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.is_file():
        try:
            with config_path.open("rb") as fh:
                data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
    elif path is not None:
        raise ConfigError(f"Config file not found: {config_path}")

    data = resolve_env_vars(data, environ)

    for section_name in ("server", "database", "sync", "logging", "host"):
        section = data.get(section_name, {})
        if not isinstance(section, dict):
            raise ConfigError(f"[{section_name}] must be a TOML table")

    host_factory = data.get("host", {}).get("factory") or environ.get("EVENTSYNC_HOST_FACTORY")
    if host_factory is not None and (not isinstance(host_factory, str) or ":" not in host_factory):
        raise ConfigError("host.factory must be a 'module:callable' string")

    return AppConfig(
        server=_parse_server(data.get("server", {}), environ),
        database=_parse_database(data.get("database", {})),
        sync=_parse_sync(data.get("sync", {})),
        logging=_parse_logging(data.get("logging", {})),
        host_factory=host_factory,
    )


def import_host_factory(target: str) -> Any:
    """Import the ``module:callable`` named by ``host.factory``."""
    module_name, _, attr = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import host factory module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"Host factory {target!r} is not a callable")
    return factory
