"""Tests for metrics helpers and log setup."""

import json
import logging

import pytest
import structlog
from prometheus_client import REGISTRY

from litharvest.config.settings import get_settings
from litharvest.observability.logging import (
    QUIET_LOGGERS,
    bind_context,
    log_context,
    restore_context,
    setup_logging,
)
from litharvest.observability.metrics import get_metrics


def _sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetrics:
    """Tests for MetricsCollector convenience methods."""

    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_record_records_skips_zero(self):
        metrics = get_metrics()
        before = _sample("litharvest_harvest_records_total", {"outcome": "filtered"})

        metrics.record_records("filtered", 0)
        metrics.record_records("filtered", 3)

        after = _sample("litharvest_harvest_records_total", {"outcome": "filtered"})
        assert after - before == 3

    def test_connector_error_counted_only_on_failure(self):
        metrics = get_metrics()
        labels = {"connector": "metrics-test", "error_type": "timeout"}
        before = _sample("litharvest_connector_errors_total", labels)

        metrics.record_connector_call("metrics-test", 0.2)
        metrics.record_connector_call("metrics-test", 1.5, "timeout")

        assert _sample("litharvest_connector_errors_total", labels) - before == 1
        assert _sample(
            "litharvest_connector_latency_seconds_count", {"connector": "metrics-test"}
        ) == 2

    def test_search_cache_outcomes(self):
        metrics = get_metrics()
        before = _sample("litharvest_search_requests_total", {"cache": "stale"})

        metrics.record_search("stale")

        assert _sample("litharvest_search_requests_total", {"cache": "stale"}) - before == 1


class TestLogContext:
    """Context binding around harvest runs and connector calls."""

    def test_restore_puts_back_outer_binding(self):
        outer = bind_context(source_id="daemon-src")
        try:
            inner = bind_context(source_id="src-1", run_id="run-1")
            assert structlog.contextvars.get_contextvars()["source_id"] == "src-1"

            restore_context(inner)

            bound = structlog.contextvars.get_contextvars()
            assert bound["source_id"] == "daemon-src"
            assert "run_id" not in bound
        finally:
            restore_context(outer)

        assert "source_id" not in structlog.contextvars.get_contextvars()

    def test_log_context_released_on_error(self):
        with pytest.raises(RuntimeError):
            with log_context(connector="arxiv"):
                assert structlog.contextvars.get_contextvars()["connector"] == "arxiv"
                raise RuntimeError("boom")

        assert "connector" not in structlog.contextvars.get_contextvars()


class TestSetupLogging:
    """Stdlib loggers share the structlog chain and bound context."""

    @pytest.fixture
    def production_logging(self, monkeypatch, capsys):
        root = logging.getLogger()
        saved = (root.handlers[:], root.level)
        monkeypatch.setenv("ENVIRONMENT", "production")
        get_settings.cache_clear()
        setup_logging()
        yield
        root.handlers, level = saved
        root.setLevel(level)
        get_settings.cache_clear()
        structlog.reset_defaults()

    def test_stdlib_line_carries_harvest_context(self, production_logging, capsys):
        with log_context(source_id="src-1", run_id="run-1"):
            logging.getLogger("litharvest.storage.repository").warning("Merge conflict on 7")

        line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert line["event"] == "Merge conflict on 7"
        assert line["source_id"] == "src-1"
        assert line["run_id"] == "run-1"
        assert line["level"] == "warning"
        assert line["logger"] == "litharvest.storage.repository"

    def test_handler_not_stacked(self, production_logging):
        setup_logging()

        assert len(logging.getLogger().handlers) == 1

    def test_quiet_loggers(self, production_logging):
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
