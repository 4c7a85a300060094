"""
Prometheus metrics for the payment-event core.

Tracks:
- Webhook deliveries by type and outcome
- Purchase integrity mismatches
- Job throughput and status
- Notification channel failures
- Provider call attempts through the retrying gateway
- Quota decisions
"""
from prometheus_client import Counter, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, duplicate, ignored
)

webhook_verification_failures_total = Counter(
    "webhook_verification_failures_total",
    "Webhook deliveries rejected at verification",
    ["reason"],  # invalid_signature, stale_timestamp
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Purchase metrics
purchase_integrity_mismatches_total = Counter(
    "purchase_integrity_mismatches_total",
    "Purchases recorded with an integrity token mismatch",
)

# Job metrics
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total jobs enqueued",
    ["job_type"],
)

jobs_completed_total = Counter(
    "jobs_completed_total",
    "Total jobs reaching a terminal status",
    ["job_type", "status"],  # done, error
)

job_processing_duration_seconds = Histogram(
    "job_processing_duration_seconds",
    "Job processing duration in seconds",
    ["job_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

notification_channel_failures_total = Counter(
    "notification_channel_failures_total",
    "Notification channel deliveries that failed",
    ["channel"],
)

# Provider gateway metrics
provider_call_attempts_total = Counter(
    "provider_call_attempts_total",
    "Provider call attempts through the retrying gateway",
    ["operation", "status"],  # success, transient_error, permanent_error
)

provider_call_duration_seconds = Histogram(
    "provider_call_duration_seconds",
    "Provider call duration including retries in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Quota metrics
quota_decisions_total = Counter(
    "quota_decisions_total",
    "Quota checks by operation and decision",
    ["operation", "tier", "decision"],  # allow, deny
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_rejected(reason: str) -> None:
        """Record a webhook rejected at verification."""
        webhook_verification_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_integrity_mismatch() -> None:
        """Record a purchase flagged for review."""
        purchase_integrity_mismatches_total.inc()

    @staticmethod
    def record_job_enqueued(job_type: str) -> None:
        """Record a job enqueue."""
        jobs_enqueued_total.labels(job_type=job_type).inc()

    @staticmethod
    def record_job_completed(job_type: str, status: str, duration_seconds: float) -> None:
        """Record a job reaching a terminal status."""
        jobs_completed_total.labels(job_type=job_type, status=status).inc()
        job_processing_duration_seconds.labels(job_type=job_type).observe(duration_seconds)

    @staticmethod
    def record_channel_failure(channel: str) -> None:
        """Record a failed notification delivery."""
        notification_channel_failures_total.labels(channel=channel).inc()

    @staticmethod
    def record_provider_attempt(operation: str, status: str) -> None:
        """Record one provider call attempt."""
        provider_call_attempts_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_provider_duration(operation: str, duration_seconds: float) -> None:
        """Record total provider call duration including retries."""
        provider_call_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_quota_decision(operation: str, tier: str, decision: str) -> None:
        """Record a quota decision."""
        quota_decisions_total.labels(operation=operation, tier=tier, decision=decision).inc()


# Export singleton instance
metrics = MetricsCollector()
