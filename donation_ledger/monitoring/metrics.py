"""
Prometheus metrics for donation confirmation monitoring.

Tracks:
- Confirmation results by channel, gateway and result
- Confirmation processing duration
- Rejected gateway signatures
- Excess-fund reallocations by policy
- Notification delivery failures
- Ledger reconciliation discrepancies
- Confirmation lock acquisitions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Confirmation metrics
confirmations_total = Counter(
    "donation_confirmations_total",
    "Total confirmation signals processed",
    ["channel", "gateway", "result"],
)

confirmation_duration_seconds = Histogram(
    "donation_confirmation_duration_seconds",
    "Confirmation processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

confirmed_amount = Histogram(
    "donation_confirmed_amount",
    "Confirmed donation amounts",
    buckets=(10000, 50000, 100000, 500000, 1000000, 5000000, 10000000, 100000000),
)

confirmation_failures_total = Counter(
    "donation_confirmation_failures_total",
    "Confirmations that failed with a persistence error",
    ["gateway"],
)

# Gateway metrics
gateway_signature_rejections_total = Counter(
    "gateway_signature_rejections_total",
    "Inbound payloads rejected for a bad signature or malformed payload",
    ["gateway", "reason"],
)

# Reallocation metrics
excess_reallocations_total = Counter(
    "excess_fund_reallocations_total",
    "Excess-fund policy applications",
    ["policy", "action"],
)

# Notification metrics
notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that could not be delivered",
)

# Reconciliation metrics
reconciliation_discrepancies_total = Gauge(
    "ledger_reconciliation_discrepancies_total",
    "Campaigns whose current amount disagrees with the ledger",
)

reconciliation_duration_seconds = Histogram(
    "ledger_reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "ledger_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

# Lock metrics
confirmation_lock_acquisitions_total = Counter(
    "confirmation_lock_acquisitions_total",
    "Total confirmation lock acquisitions",
    ["status"],  # acquired, timeout
)

confirmation_lock_wait_seconds = Histogram(
    "confirmation_lock_wait_seconds",
    "Time spent waiting for a confirmation lock in seconds",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_confirmation(
        channel: str, gateway: str, result: str, duration_seconds: float
    ) -> None:
        """Record a processed confirmation signal."""
        confirmations_total.labels(channel=channel, gateway=gateway, result=result).inc()
        confirmation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_confirmed_amount(amount: float) -> None:
        """Record the amount of a newly confirmed donation."""
        confirmed_amount.observe(amount)

    @staticmethod
    def record_confirmation_failure(gateway: str) -> None:
        """Record a confirmation that failed to persist."""
        confirmation_failures_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_signature_rejection(gateway: str, reason: str) -> None:
        """Record a rejected inbound payload."""
        gateway_signature_rejections_total.labels(gateway=gateway, reason=reason).inc()

    @staticmethod
    def record_reallocation(policy: str, action: str) -> None:
        """Record an excess-fund policy application."""
        excess_reallocations_total.labels(policy=policy, action=action).inc()

    @staticmethod
    def record_notification_failure() -> None:
        """Record a failed notification."""
        notification_failures_total.inc()

    @staticmethod
    def set_reconciliation_metrics(discrepancies_count: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def record_confirmation_lock(status: str, wait_seconds: float = 0) -> None:
        """Record confirmation lock acquisition."""
        confirmation_lock_acquisitions_total.labels(status=status).inc()
        if wait_seconds > 0:
            confirmation_lock_wait_seconds.observe(wait_seconds)


# Export singleton instance
metrics = MetricsCollector()
