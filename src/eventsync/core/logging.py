"""Structured logging for eventsync.

Call sites keep using ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records as colored console lines
(``text``) or JSON lines (``json``). Each record carries the id of the sync
configuration being processed and the current OTel trace and span ids.

With ``log_root`` set, JSON copies go to ``eventsync.log`` (everything) and
``http.log`` (uvicorn and HTTP client transport loggers).
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_current_config_id: ContextVar[str | None] = ContextVar("sync_config_id", default=None)

_NOISE_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def get_sync_config_context() -> str | None:
    return _current_config_id.get()


@contextmanager
def sync_config_context(config_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with *config_id*."""
    token = _current_config_id.set(config_id)
    try:
        yield
    finally:
        _current_config_id.reset(token)


def add_sync_config_context(logger, method_name: str, event_dict: dict) -> dict:
    event_dict["sync_config_id"] = _current_config_id.get()
    return event_dict


def add_otel_context(logger, method_name: str, event_dict: dict) -> dict:
    """Add hex ``trace_id``/``span_id``; zeros outside a recording span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_sync_config_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
) -> None:
    """Install the eventsync handlers on the root logger.

    Reconfiguring replaces earlier root handlers. *level* is case-insensitive;
    unknown names fall back to INFO.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    noisy = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noisy_logger in noisy:
        noisy_logger.setLevel(logging.WARNING)

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file(directory / "eventsync.log"))
        transport = _json_file(directory / "http.log")
        for noisy_logger in noisy:
            noisy_logger.addHandler(transport)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
