"""OpenTelemetry metrics instruments for sync passes.

Instruments are created lazily from the global MeterProvider, so callers do
not pass a Meter around.  Without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the SDK
falls back to a no-op provider and every recording is silent.

Instruments
-----------
  eventsync.sync.passes_total       Counter   (labels: provider_type, status)
      Finished sync passes.

  eventsync.sync.events_total       Counter   (labels: provider_type, direction, action)
      Events pulled and pushed, by reconciliation or push action.

  eventsync.sync.pass_duration_ms   Histogram (label: provider_type)
      Wall-clock duration of a sync pass.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "eventsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a MeterProvider with a
    periodic OTLP gRPC exporter.  Otherwise the global no-op provider stays.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Meter from the current global provider; a no-op before ``init_metrics``."""
    return metrics.get_meter(_METER_NAME)


def _passes_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="eventsync.sync.passes_total",
        description="Finished sync passes by outcome",
        unit="passes",
    )


def _events_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="eventsync.sync.events_total",
        description="Events processed by sync passes",
        unit="events",
    )


def _pass_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="eventsync.sync.pass_duration_ms",
        description="Wall-clock duration of a sync pass",
        unit="ms",
    )


class SyncMetrics:
    """Per-provider-type recording helpers.

    Instruments are resolved on first use so importing this module never
    touches the global MeterProvider.
    """

    def __init__(self, provider_type: str) -> None:
        self._attrs = {"provider_type": provider_type}
        self.__passes: metrics.Counter | None = None
        self.__events: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None

    @property
    def _passes(self) -> metrics.Counter:
        if self.__passes is None:
            self.__passes = _passes_total()
        return self.__passes

    @property
    def _events(self) -> metrics.Counter:
        if self.__events is None:
            self.__events = _events_total()
        return self.__events

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _pass_duration_ms()
        return self.__duration

    def record_pass(self, status: str, duration_ms: float) -> None:
        self._passes.add(1, {**self._attrs, "status": status})
        self._duration.record(duration_ms, self._attrs)

    def record_events(self, direction: str, action: str, count: int = 1) -> None:
        if count <= 0:
            return
        self._events.add(count, {**self._attrs, "direction": direction, "action": action})
