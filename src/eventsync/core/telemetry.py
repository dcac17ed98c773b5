"""OpenTelemetry initialization and span helpers for sync passes."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from eventsync.core.logging import sync_config_context
from eventsync.sync.types import SyncConfiguration

logger = logging.getLogger(__name__)

_TRACER_NAME = "eventsync"

_provider_installed = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting TracerProvider once, if an endpoint is configured.

    Without ``OTEL_EXPORTER_OTLP_ENDPOINT`` spans go to the no-op tracer.
    """
    global _provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and not _provider_installed:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _provider_installed = True
        logger.info("Exporting %s traces to %s", service_name, endpoint)
    elif not endpoint:
        logger.info("No OTLP endpoint configured; sync spans are not exported")
    return get_tracer()


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


def tag_sync_span(span: trace.Span, config: SyncConfiguration) -> None:
    """Set configuration and provider attributes on *span*."""
    span.set_attribute("sync.config_id", config.id)
    span.set_attribute("sync.provider_type", str(config.provider_type))
    span.set_attribute("sync.provider_id", config.provider_id)
    span.set_attribute("sync.direction", str(config.direction))


@contextmanager
def sync_span(name: str, config: SyncConfiguration) -> Iterator[trace.Span]:
    """Run the block inside a span tagged with *config*.

    Log records emitted inside the block carry the configuration id.
    Exceptions are recorded on the span, which is marked ERROR, and
    re-raised.
    """
    tracer = get_tracer()
    with sync_config_context(config.id):
        with tracer.start_as_current_span(
            f"eventsync.{name}", record_exception=False, set_status_on_exception=False
        ) as span:
            tag_sync_span(span, config)
            try:
                yield span
            except Exception as exc:
                span.set_status(trace.StatusCode.ERROR, str(exc))
                span.record_exception(exc)
                raise
