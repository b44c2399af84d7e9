"""
Metrics Collection with Prometheus.

Exposes quota and billing metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    SOURCE = "source"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class QuotaMetrics:
    """
    Centralized metrics for the quota service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Entitlement checks
    - Generations (by quota source, success/denial)
    - Credit grants and webhook outcomes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "palette_quota_service",
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
            "palette_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "palette_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "palette_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_checks_total = Counter(
            "palette_entitlement_checks_total",
            "Total entitlement computations",
            [MetricLabels.SOURCE, "can_generate"],
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.generations_total = Counter(
            "palette_generations_total",
            "Total generation attempts",
            [MetricLabels.SOURCE, MetricLabels.OUTCOME],
        )

        self.generation_duration_seconds = Histogram(
            "palette_generation_duration_seconds",
            "Quota-guarded generation write duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        self.generation_retries_total = Counter(
            "palette_generation_retries_total",
            "Generation attempts retried after a transient store error",
        )

        # ====================================================================
        # Billing Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "palette_webhook_events_total",
            "Billing events handled, by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.credits_granted_total = Counter(
            "palette_credits_granted_total",
            "Total generation credits granted from purchases",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "palette_errors_total",
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

    def record_entitlement_check(self, source: str, can_generate: bool) -> None:
        """Record an entitlement computation."""
        self.entitlement_checks_total.labels(source=source, can_generate=str(can_generate)).inc()

    def record_generation(self, source: str, outcome: str, duration: float | None = None) -> None:
        """Record a generation attempt (created / quota_exceeded / transient_error)."""
        self.generations_total.labels(source=source, outcome=outcome).inc()
        if duration is not None:
            self.generation_duration_seconds.observe(duration)

    def record_webhook_event(self, event_type: str, outcome: str, credits: int = 0) -> None:
        """Record a handled billing event."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        if credits > 0:
            self.credits_granted_total.inc(credits)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = QuotaMetrics()
