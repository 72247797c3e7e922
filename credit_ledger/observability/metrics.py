"""
Metrics Collection with Prometheus.

Exposes ledger and HTTP metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, generate_latest

from credit_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    BILLING_PERIOD = "billing_period"
    REASON = "reason"
    PACK_ID = "pack_id"


class LedgerMetrics:
    """
    Centralized metrics for the credits ledger.

    Covers HTTP traffic, credit flow in and out of balances, rejected
    consumption and ledger operation latency.
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("ledger_service", "Service information")
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Credit Flow Metrics
        # ====================================================================
        self.credits_consumed_total = Counter(
            "ledger_credits_consumed_total",
            "Total credits consumed",
            [MetricLabels.OPERATION],
        )

        self.consumption_rejections_total = Counter(
            "ledger_consumption_rejections_total",
            "Consumption requests rejected before any mutation",
            [MetricLabels.ERROR_TYPE],
        )

        self.credits_allocated_total = Counter(
            "ledger_credits_allocated_total",
            "Total credits granted by subscription allocations",
            [MetricLabels.BILLING_PERIOD],
        )

        self.credits_expired_total = Counter(
            "ledger_credits_expired_total",
            "Total credits expired or forfeited",
            [MetricLabels.REASON],
        )

        self.packs_purchased_total = Counter(
            "ledger_packs_purchased_total",
            "Total credit packs purchased",
            [MetricLabels.PACK_ID],
        )

        self.ledger_operation_duration_seconds = Histogram(
            "ledger_operation_duration_seconds",
            "Ledger unit of work duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_consumption(self, operation: str, credits_used: int, duration: float) -> None:
        """Record a successful consumption."""
        self.credits_consumed_total.labels(operation=operation).inc(credits_used)
        self.ledger_operation_duration_seconds.labels(operation="consume").observe(duration)

    def record_consumption_rejected(self, error_type: str) -> None:
        self.consumption_rejections_total.labels(error_type=error_type).inc()

    def record_allocation(self, billing_period: str, credits: int, duration: float) -> None:
        """Record credits granted by an allocation."""
        self.credits_allocated_total.labels(billing_period=billing_period).inc(credits)
        self.ledger_operation_duration_seconds.labels(operation="allocate").observe(duration)

    def record_expiration(self, reason: str, credits: int) -> None:
        self.credits_expired_total.labels(reason=reason).inc(credits)

    def record_pack_purchase(self, pack_id: str, duration: float) -> None:
        self.packs_purchased_total.labels(pack_id=pack_id).inc()
        self.ledger_operation_duration_seconds.labels(operation="purchase_pack").observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/credits/consume", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def render_latest() -> bytes:
    """Prometheus exposition of the default registry."""
    return generate_latest(REGISTRY)
