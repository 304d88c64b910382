"""
Prometheus metrics for the chat and notification API.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Conversation creation outcomes (created, existing)
- Message append outcomes
- Notifications created per type
- Live channel subscribers per channel kind

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, existing
conversations_total = Counter(
    "conversations_total",
    "Conversation get-or-create outcomes",
    labelnames=["result"]
)

# result: appended, invalid_input, not_a_participant
chat_messages_total = Counter(
    "chat_messages_total",
    "Chat message append outcomes",
    labelnames=["result"]
)

notifications_total = Counter(
    "notifications_total",
    "Notifications created",
    labelnames=["type"]
)

# kind: chat, notifications
channel_subscribers = Gauge(
    "channel_subscribers",
    "Currently open live subscriptions",
    labelnames=["kind"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when matched, raw path otherwise
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_conversation_outcome(created: bool) -> None:
    conversations_total.labels(result="created" if created else "existing").inc()


def record_message_outcome(result: str) -> None:
    chat_messages_total.labels(result=result).inc()


def record_notification_created(notification_type: str) -> None:
    notifications_total.labels(type=notification_type).inc()


def set_channel_subscribers(kind: str, count: int) -> None:
    channel_subscribers.labels(kind=kind).set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
