"""
Prometheus metrics for the SMS CRM API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound webhook outcome counter (result)
- Conversation resolution outcome counter (outcome)
- Participant binding conflict counter (stage)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook processing outcomes",
    labelnames=["result"]
)

# outcome: existing, redirected, created, error_<kind>
conversation_resolutions_total = Counter(
    "conversation_resolutions_total",
    "Conversation resolution outcomes",
    labelnames=["outcome"]
)

# stage: verify (existing conversation), create (freshly created conversation)
participant_conflicts_total = Counter(
    "participant_conflicts_total",
    "Participant bindings found to belong to another conversation",
    labelnames=["stage"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Path parameters (phone numbers, conversation keys) would explode cardinality
    normalized_path = path.split("?")[0]
    for prefix in ("/conversations/", "/messages/"):
        if normalized_path.startswith(prefix) and normalized_path != "/conversations/resolve":
            normalized_path = prefix + "{key}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_resolution_outcome(outcome: str) -> None:
    conversation_resolutions_total.labels(outcome=outcome).inc()


def record_participant_conflict(stage: str) -> None:
    participant_conflicts_total.labels(stage=stage).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
