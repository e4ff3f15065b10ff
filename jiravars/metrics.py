"""Prometheus metrics describing the exporter itself.

Poll outcomes and durations are recorded by the poll scheduler; scrape
requests are counted by the request-logging middleware.  The metrics are
registered into the same registry as the Jira gauge families so that one
``/metrics`` scrape returns both.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ExporterMetrics:
    """Counters, histograms, and gauges about polling and serving.

    Parameters:
        registry: Registry to register the metrics in.
    """

    def __init__(self, registry: CollectorRegistry) -> None:
        self.polls = Counter(
            "jiravars_poll_total",
            "Completed poll cycles",
            ["metric", "result"],
            registry=registry,
        )
        self.poll_errors = Counter(
            "jiravars_poll_errors_total",
            "Failed poll cycles by failing stage",
            ["metric", "stage"],
            registry=registry,
        )
        self.poll_duration = Histogram(
            "jiravars_poll_duration_seconds",
            "Duration of a poll cycle in seconds",
            ["metric"],
            buckets=(
                0.05, 0.1, 0.25, 0.5, 1.0,
                2.5, 5.0, 10.0, 30.0, 60.0,
            ),
            registry=registry,
        )
        self.last_success = Gauge(
            "jiravars_last_success_timestamp_seconds",
            "Unix time of the last successful poll",
            ["metric"],
            registry=registry,
        )
        self.scrape_requests = Counter(
            "jiravars_scrape_requests_total",
            "HTTP requests served by the exporter",
            ["endpoint", "status_code"],
            registry=registry,
        )

    def record_success(self, metric: str, duration: float) -> None:
        self.polls.labels(metric=metric, result="success").inc()
        self.poll_duration.labels(metric=metric).observe(duration)
        self.last_success.labels(metric=metric).set_to_current_time()

    def record_failure(self, metric: str, stage: str, duration: float) -> None:
        self.polls.labels(metric=metric, result="error").inc()
        self.poll_errors.labels(metric=metric, stage=stage).inc()
        self.poll_duration.labels(metric=metric).observe(duration)
