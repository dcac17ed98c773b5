"""Tests for structured logging and sync tracing helpers."""

from __future__ import annotations

import json
import logging

import pytest

from eventsync.core.logging import (
    _NOISE_LOGGERS,
    add_otel_context,
    add_sync_config_context,
    configure_logging,
    get_sync_config_context,
    sync_config_context,
)
from eventsync.core.telemetry import init_telemetry, sync_span
from eventsync.sync.types import ProviderType, SyncConfiguration, SyncDirection

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


def _config() -> SyncConfiguration:
    return SyncConfiguration(
        id="cfg-7",
        user_id="user-1",
        provider_id="primary",
        provider_type=ProviderType.GOOGLE_CALENDAR,
        direction=SyncDirection.PULL,
    )


class TestSyncConfigContext:
    def test_context_manager_restores_previous_value(self):
        assert get_sync_config_context() is None
        with sync_config_context("cfg-1"):
            assert get_sync_config_context() == "cfg-1"
            assert add_sync_config_context(None, "info", {})["sync_config_id"] == "cfg-1"
        assert get_sync_config_context() is None

    def test_otel_context_without_span_is_zeroed(self):
        event_dict = add_otel_context(None, "info", {})

        assert event_dict["trace_id"] == "0" * 32
        assert event_dict["span_id"] == "0" * 16


class TestConfigureLogging:
    def test_level_and_noise_loggers(self):
        configure_logging(level="debug", fmt="text")

        assert logging.getLogger().level == logging.DEBUG
        assert len(logging.getLogger().handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_file_output_carries_config_id(self, tmp_path):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)

        with sync_config_context("cfg-42"):
            logging.getLogger("eventsync.test").info("pass finished")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "eventsync.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "pass finished"
        assert record["sync_config_id"] == "cfg-42"
        assert record["level"] == "info"
        assert (tmp_path / "http.log").exists()


class TestSyncSpan:
    def test_noop_tracer_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

        assert init_telemetry("eventsync-test") is not None

    def test_span_tags_log_context_and_reraises(self):
        with pytest.raises(ValueError, match="boom"):
            with sync_span("pull", _config()):
                assert get_sync_config_context() == "cfg-7"
                raise ValueError("boom")

        assert get_sync_config_context() is None
