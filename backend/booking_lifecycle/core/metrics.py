"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Edit orchestrator metrics
edit_attempts = Counter(
    'booking_edit_attempts_total',
    'Booking edit commit attempts',
    ['operation', 'outcome']  # edit/transfer/cancel, committed/rejected/payment_failed/...
)

edit_latency = Histogram(
    'booking_edit_latency_seconds',
    'Booking edit commit latency',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

idempotent_replays = Counter(
    'booking_idempotent_replays_total',
    'Commits answered from a stored idempotency record',
    ['operation']
)

compensations = Counter(
    'booking_compensations_total',
    'Compensating actions run after a failed commit step',
    ['step']  # inventory, payment, persist
)

rate_limit_rejections = Counter(
    'booking_edit_rate_limited_total',
    'Edits rejected by the per-actor rate limit'
)

# Payment metrics
payment_operations = Counter(
    'payment_operations_total',
    'Payment gateway operations',
    ['operation', 'result']  # authorize/capture/cancel/refund, success/failure/retry/timeout
)

gateway_latency = Histogram(
    'payment_gateway_latency_seconds',
    'Payment gateway call latency',
    ['operation'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

refund_amount = Counter(
    'payment_refunded_cents_total',
    'Total refunded amount in cents'
)

# Cancellation metrics
cancellation_decisions = Counter(
    'cancellation_decisions_total',
    'Cancellation outcomes',
    ['outcome']  # auto_approved, manual_review
)

# Audit metrics
audit_writes = Counter(
    'audit_entries_written_total',
    'Audit entries appended',
    ['action']
)

audit_alerts = Counter(
    'audit_alerts_total',
    'Audit alerts published',
    ['alert_type', 'result']  # published, dropped, delivered, failed
)

audit_purged = Counter(
    'audit_entries_purged_total',
    'Audit entries removed by retention cleanup'
)


# HTTP metrics
http_request_seconds = Histogram(
    'booking_http_request_seconds',
    'API request latency by route template',
    ['method', 'route', 'status_class'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_edit_attempt(operation: str, outcome: str):
    """Record an orchestrator commit. Outcome: committed, rejected, payment_failed, inventory_conflict, error"""
    edit_attempts.labels(operation=operation, outcome=outcome).inc()


def record_payment_operation(operation: str, result: str):
    """Record a gateway call. Result: success, failure, retry, timeout"""
    payment_operations.labels(operation=operation, result=result).inc()


def record_audit_write(action: str):
    audit_writes.labels(action=action).inc()


def record_alert(alert_type: str, result: str):
    audit_alerts.labels(alert_type=alert_type, result=result).inc()


def observe_http_request(method: str, route: str, status_code: int, seconds: float):
    http_request_seconds.labels(method=method, route=route, status_class=f"{status_code // 100}xx").observe(seconds)
