"""Prometheus metric definitions for the purchase service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


purchase_requests_total = Counter(
    "purchase_requests_total",
    "Total course purchase requests",
    ["service", "flow"],
)
purchase_outcomes_total = Counter(
    "purchase_outcomes_total",
    "Course purchase responses by status tag",
    ["service", "flow", "status"],
)
purchase_latency_seconds = Histogram(
    "purchase_latency_seconds",
    "Purchase handling latency seconds",
    ["service", "flow"],
)
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway call duration seconds",
    ["service", "operation"],
)
gateway_failures_total = Counter(
    "gateway_failures_total",
    "Payment gateway calls that did not return a confirmed success",
    ["service", "operation", "error_code"],
)
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service", "name"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment end-to-end duration seconds from PENDING to terminal",
    ["service", "terminal_state"],
)
stale_payments_expired_total = Counter(
    "stale_payments_expired_total",
    "Pending payments failed by the reconciliation sweep",
    ["service"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
