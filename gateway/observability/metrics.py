"""
Metrics Collection with Prometheus.

Exposes admission, streaming and metering metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from gateway.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TIER = "tier"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the gateway.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Admission decisions and degraded (fail-open) admissions
    - Stream outcomes, tokens relayed, time to first token
    - Ledger writes and billing reports
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "gateway_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "gateway_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "gateway_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0),
        )

        self.http_requests_in_progress = Gauge(
            "gateway_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Admission Metrics
        # ====================================================================
        self.admission_decisions_total = Counter(
            "gateway_admission_decisions_total",
            "Admission decisions by outcome",
            [MetricLabels.OUTCOME, MetricLabels.TIER],
        )

        self.admission_duration_seconds = Histogram(
            "gateway_admission_duration_seconds",
            "Admission check duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.admission_fail_open_total = Counter(
            "gateway_admission_fail_open_total",
            "Admissions granted because a backing store was unavailable",
            ["store"],
        )

        # ====================================================================
        # Streaming Metrics
        # ====================================================================
        self.streams_total = Counter(
            "gateway_streams_total",
            "Relayed streams by terminal outcome",
            [MetricLabels.OUTCOME],
        )

        self.streams_active = Gauge(
            "gateway_streams_active",
            "Streams currently relaying",
        )

        self.tokens_relayed_total = Counter(
            "gateway_tokens_relayed_total",
            "Tokens consumed upstream by kind",
            ["kind"],
        )

        self.time_to_first_token_seconds = Histogram(
            "gateway_time_to_first_token_seconds",
            "Time from request to first content delta",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_writes_total = Counter(
            "gateway_ledger_writes_total",
            "Usage ledger writes",
            ["success"],
        )

        self.ledger_write_duration_seconds = Histogram(
            "gateway_ledger_write_duration_seconds",
            "Usage ledger write duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.accounts_created_total = Counter(
            "gateway_accounts_created_total",
            "Total accounts created on first authentication",
        )

        self.overage_reports_total = Counter(
            "gateway_overage_reports_total",
            "Overage reports sent to the billing processor",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "gateway_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_admission(self, outcome: str, tier: str | None, duration: float) -> None:
        """Record an admission decision."""
        self.admission_decisions_total.labels(outcome=outcome, tier=tier or "unknown").inc()
        self.admission_duration_seconds.observe(duration)

    def record_fail_open(self, store: str) -> None:
        self.admission_fail_open_total.labels(store=store).inc()

    def record_stream(self, outcome: str) -> None:
        self.streams_total.labels(outcome=outcome).inc()

    def record_tokens(
        self, input_tokens: int, output_tokens: int, cache_read: int, cache_creation: int
    ) -> None:
        """Record token consumption for one upstream call."""
        self.tokens_relayed_total.labels(kind="input").inc(input_tokens)
        self.tokens_relayed_total.labels(kind="output").inc(output_tokens)
        self.tokens_relayed_total.labels(kind="cache_read").inc(cache_read)
        self.tokens_relayed_total.labels(kind="cache_creation").inc(cache_creation)

    def record_ledger_write(self, success: bool, duration: float) -> None:
        self.ledger_writes_total.labels(success=str(success)).inc()
        self.ledger_write_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
