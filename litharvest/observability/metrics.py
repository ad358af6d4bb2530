"""
Prometheus metrics for monitoring harvesting and federated search.

Defines and exposes metrics for:
- Harvest runs and record outcomes
- OAI-PMH page latency
- Enrichment cache effectiveness
- Search requests, connector latency and connector errors

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from litharvest.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the litharvest pipeline.

    Usage:
        metrics = get_metrics()
        metrics.start_server()

        metrics.record_harvest_run("completed")
        metrics.record_records("added", count=10)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Harvesting
        self.harvest_runs = Counter(
            "litharvest_harvest_runs_total",
            "Total harvest runs finalized",
            ["status"],  # completed, failed, skipped
        )

        self.harvest_records = Counter(
            "litharvest_harvest_records_total",
            "Harvested records by outcome",
            ["outcome"],  # added, updated, failed, filtered, deleted
        )

        self.harvest_page_latency = Histogram(
            "litharvest_harvest_page_latency_seconds",
            "Time to fetch one OAI-PMH page",
            buckets=LATENCY_BUCKETS,
        )

        self.harvests_in_flight = Gauge(
            "litharvest_harvests_in_flight",
            "Number of harvest runs currently executing",
        )

        # Enrichment
        self.enrichment_lookups = Counter(
            "litharvest_enrichment_lookups_total",
            "DOI enrichment lookups",
            ["result"],  # cache_hit, fetched, not_found, error
        )

        # Search
        self.search_requests = Counter(
            "litharvest_search_requests_total",
            "Federated search requests",
            ["cache"],  # hit, miss, stale
        )

        self.connector_latency = Histogram(
            "litharvest_connector_latency_seconds",
            "Time spent in one connector search call",
            ["connector"],
            buckets=LATENCY_BUCKETS,
        )

        self.connector_errors = Counter(
            "litharvest_connector_errors_total",
            "Connector failures surfaced to the aggregator",
            ["connector", "error_type"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    # Convenience methods

    def record_harvest_run(self, status: str) -> None:
        """Record a finalized (or skipped) harvest run."""
        self.harvest_runs.labels(status=status).inc()

    def record_records(self, outcome: str, count: int = 1) -> None:
        """Record harvested records by outcome."""
        if count:
            self.harvest_records.labels(outcome=outcome).inc(count)

    def record_page_latency(self, latency: float) -> None:
        self.harvest_page_latency.observe(latency)

    def record_enrichment(self, result: str) -> None:
        self.enrichment_lookups.labels(result=result).inc()

    def record_search(self, cache: str) -> None:
        self.search_requests.labels(cache=cache).inc()

    def record_connector_call(
        self,
        connector: str,
        latency: float,
        error_type: str | None = None,
    ) -> None:
        """
        Record one connector call.

        Args:
            connector: Connector id
            latency: Call duration in seconds
            error_type: Error category when the call failed
        """
        self.connector_latency.labels(connector=connector).observe(latency)
        if error_type is not None:
            self.connector_errors.labels(
                connector=connector,
                error_type=error_type,
            ).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
