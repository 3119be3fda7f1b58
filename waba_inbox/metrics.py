"""
Prometheus metrics for the webhook service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook delivery outcome counter (result)
- Per-message ingestion outcome counter (result)
- Media relay outcome counter (result)

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: processed, no_channel, unknown_tenant, invalid_signature, unparseable
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook delivery outcomes",
    labelnames=["result"]
)

# result: created, duplicate, failed
webhook_messages_total = Counter(
    "webhook_messages_total",
    "Inbound messages by ingestion outcome",
    labelnames=["result"]
)

# result: uploaded, failed, skipped
media_relay_total = Counter(
    "media_relay_total",
    "Media relay attempts by outcome",
    labelnames=["result"]
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
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

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


def record_message_outcome(result: str) -> None:
    webhook_messages_total.labels(result=result).inc()


def record_media_relay(result: str) -> None:
    media_relay_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
