"""
Prometheus metrics for kiosk session and payment monitoring.

Tracks:
- Backend request counts and latency by endpoint
- Auth check results and authorization poll outcomes
- Token refreshes and forced logouts
- Idempotency ledger lookups and prunes
- Reader (hardware SDK) authorization actions
- Payment outcomes by processing mode
- Offline payment queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Backend metrics
backend_requests_total = Counter(
    "kiosk_backend_requests_total",
    "Total kiosk backend requests",
    ["endpoint", "status"],  # status: http code, or "network_error"
)

backend_request_duration_seconds = Histogram(
    "kiosk_backend_request_duration_seconds",
    "Kiosk backend request duration in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# Session metrics
auth_checks_total = Counter(
    "kiosk_auth_checks_total",
    "Total auth status checks",
    ["result"],  # authenticated, not_connected, refresh, outage, failed
)

auth_polls_total = Counter(
    "kiosk_auth_polls_total",
    "Total authorization poll responses",
    ["outcome"],  # complete, location_selection_required, in_progress, invalid_state, error
)

token_refresh_total = Counter(
    "kiosk_token_refresh_total",
    "Total token refresh attempts",
    ["status"],  # success, failed
)

forced_logouts_total = Counter(
    "kiosk_forced_logouts_total",
    "Total forced logouts",
    ["reason"],
)

auth_state = Gauge(
    "kiosk_auth_state",
    "Current session state (0=unauthenticated, 1=authenticating, 2=polling, "
    "3=authenticated, 4=refreshing, 5=logging_out)",
)

# Idempotency metrics
idempotency_lookups_total = Counter(
    "kiosk_idempotency_lookups_total",
    "Total idempotency ledger lookups",
    ["result"],  # hit, miss
)

idempotency_pruned_total = Counter(
    "kiosk_idempotency_pruned_total",
    "Total idempotency records pruned",
)

# Reader metrics
reader_authorizations_total = Counter(
    "kiosk_reader_authorizations_total",
    "Total reader authorization reconciliations",
    ["action"],  # noop, authorized, reauthorized, location_recheck, failed
)

# Payment metrics
payments_total = Counter(
    "kiosk_payments_total",
    "Total payment attempts by outcome",
    ["outcome", "processing_mode"],
)

payment_amount_minor_units = Histogram(
    "kiosk_payment_amount_minor_units",
    "Submitted payment amounts in minor units",
    buckets=(100, 500, 1000, 1800, 3600, 5000, 10000, 50000, 100000),
)

offline_queue_depth = Gauge(
    "kiosk_offline_queue_depth",
    "Payments queued offline by the reader SDK",
)

AUTH_STATE_VALUES = {
    "unauthenticated": 0,
    "authenticating": 1,
    "polling_for_completion": 2,
    "authenticated": 3,
    "refreshing": 4,
    "logging_out": 5,
}


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_backend_request(endpoint: str, status: str, duration_seconds: float) -> None:
        """Record a backend request."""
        backend_requests_total.labels(endpoint=endpoint, status=status).inc()
        backend_request_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)

    @staticmethod
    def record_auth_check(result: str) -> None:
        """Record an auth status check result."""
        auth_checks_total.labels(result=result).inc()

    @staticmethod
    def record_auth_poll(outcome: str) -> None:
        """Record an authorization poll outcome."""
        auth_polls_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_token_refresh(status: str) -> None:
        """Record a token refresh attempt."""
        token_refresh_total.labels(status=status).inc()

    @staticmethod
    def record_forced_logout(reason: str) -> None:
        """Record a forced logout."""
        forced_logouts_total.labels(reason=reason).inc()

    @staticmethod
    def set_auth_state(state: str) -> None:
        """Set current session state."""
        auth_state.set(AUTH_STATE_VALUES.get(state, 0))

    @staticmethod
    def record_idempotency_lookup(result: str) -> None:
        """Record idempotency ledger lookup."""
        idempotency_lookups_total.labels(result=result).inc()

    @staticmethod
    def record_idempotency_pruned(count: int) -> None:
        """Record pruned idempotency records."""
        if count > 0:
            idempotency_pruned_total.inc(count)

    @staticmethod
    def record_reader_authorization(action: str) -> None:
        """Record a reader authorization reconciliation."""
        reader_authorizations_total.labels(action=action).inc()

    @staticmethod
    def record_payment(outcome: str, processing_mode: str, amount_minor_units: int) -> None:
        """Record a payment outcome."""
        payments_total.labels(outcome=outcome, processing_mode=processing_mode).inc()
        payment_amount_minor_units.observe(amount_minor_units)

    @staticmethod
    def set_offline_queue_depth(depth: int) -> None:
        """Set offline queue depth."""
        offline_queue_depth.set(depth)


# Export singleton instance
metrics = MetricsCollector()
