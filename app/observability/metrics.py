"""
Metrics Collection with Prometheus.

Exposes trial quota, device sync and HTTP metrics for monitoring.
"""

import time
from enum import StrEnum
from typing import Callable

from prometheus_client import Counter, Histogram, Info

from app.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names; members render as their plain value."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    STORE_MODE = "store_mode"
    ERROR_TYPE = "error_type"


class TrialSyncMetrics:
    """
    Centralized metrics for the TrialSync API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Trial consumption (outcome, store mode, fallback activations)
    - Device sessions (logins, evictions, logouts)
    - Sync events and security alerts written
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "trialsync_service",
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
            "trialsync_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "trialsync_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Trial Metrics
        # ====================================================================
        self.trial_consumptions_total = Counter(
            "trialsync_trial_consumptions_total",
            "Trial consume attempts by outcome",
            [MetricLabels.OUTCOME, MetricLabels.STORE_MODE],
        )

        self.trial_consume_duration_seconds = Histogram(
            "trialsync_trial_consume_duration_seconds",
            "Trial consume duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        self.trial_store_fallbacks_total = Counter(
            "trialsync_trial_store_fallbacks_total",
            "Times the durable trial store was marked unavailable",
            [MetricLabels.OPERATION],
        )

        self.trial_rate_limited_total = Counter(
            "trialsync_trial_rate_limited_total",
            "Trial requests denied by the hourly rate limit",
        )

        # ====================================================================
        # Device Session Metrics
        # ====================================================================
        self.device_logins_total = Counter(
            "trialsync_device_logins_total",
            "Device sessions created",
            ["new_device"],
        )

        self.sessions_evicted_total = Counter(
            "trialsync_sessions_evicted_total",
            "Sessions terminated by login conflict resolution",
        )

        self.sessions_terminated_total = Counter(
            "trialsync_sessions_terminated_total",
            "Sessions terminated by reason",
            ["reason"],
        )

        self.conflict_checks_total = Counter(
            "trialsync_conflict_checks_total",
            "Login conflict checks by result",
            ["has_conflicts"],
        )

        # ====================================================================
        # Sync Event / Alert Metrics
        # ====================================================================
        self.sync_events_total = Counter(
            "trialsync_sync_events_total",
            "Sync events written",
            ["event_type", "success"],
        )

        self.security_alerts_total = Counter(
            "trialsync_security_alerts_total",
            "Security alerts raised",
            ["alert_type", "severity"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "trialsync_errors_total",
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

    def record_trial_consumption(self, outcome: str, store_mode: str, duration: float) -> None:
        """Record a trial consume attempt (success, blocked, exhausted)."""
        self.trial_consumptions_total.labels(outcome=outcome, store_mode=store_mode).inc()
        self.trial_consume_duration_seconds.observe(duration)

    def record_trial_fallback(self, operation: str) -> None:
        """Record a degradation of the trial store to memory."""
        self.trial_store_fallbacks_total.labels(operation=operation).inc()

    def record_device_login(self, new_device: bool) -> None:
        """Record a device session creation."""
        self.device_logins_total.labels(new_device=str(new_device)).inc()

    def record_sessions_terminated(self, reason: str, count: int) -> None:
        """Record terminated sessions; conflict terminations also count as evictions."""
        if count <= 0:
            return
        self.sessions_terminated_total.labels(reason=reason).inc(count)
        if reason == "conflict":
            self.sessions_evicted_total.inc(count)

    def record_conflict_check(self, has_conflicts: bool) -> None:
        """Record one login conflict detection."""
        self.conflict_checks_total.labels(has_conflicts=str(has_conflicts)).inc()

    def record_sync_event(self, event_type: str, success: bool) -> None:
        """Record a sync event write attempt."""
        self.sync_events_total.labels(event_type=event_type, success=str(success)).inc()

    def record_security_alert(self, alert_type: str, severity: str) -> None:
        """Record a raised security alert."""
        self.security_alerts_total.labels(alert_type=alert_type, severity=severity).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = TrialSyncMetrics()


class track_duration:
    """
    Context manager measuring elapsed wall time.

    Usage:
        with track_duration() as timer:
            ...
        metrics.record_trial_consumption("success", "durable", timer.elapsed)
    """

    def __init__(self) -> None:
        self.start_time: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> "track_duration":
        """Start timing."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Stop timing."""
        self.elapsed = time.perf_counter() - self.start_time


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus exposition handler for the /metrics route."""
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
