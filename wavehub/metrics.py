"""
Prometheus metrics for the signaling hub.

This module provides:
- HTTP request counter and latency histogram (health/metrics endpoints)
- Live WebSocket connection gauge
- Inbound frame counter (type, result)
- Call state transition counter
- Relayed chat message counter (initial status)

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

ws_connections = Gauge(
    "ws_connections",
    "Currently open WebSocket connections",
    labelnames=["state"]
)

# result: ok, unauthorized, invalid, unknown_type, error
ws_frames_total = Counter(
    "ws_frames_total",
    "Inbound WebSocket frames by type and handling result",
    labelnames=["type", "result"]
)

call_transitions_total = Counter(
    "call_transitions_total",
    "Call state transitions",
    labelnames=["status"]
)

messages_relayed_total = Counter(
    "messages_relayed_total",
    "Chat messages persisted and fanned out, by initial status",
    labelnames=["status"]
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


def record_frame(frame_type: str, result: str) -> None:
    """
    Record the outcome of one inbound frame.

    Args:
        frame_type: Inbound ``type`` value, or ``invalid`` when unparseable
        result: ok, unauthorized, invalid, unknown_type or error
    """
    ws_frames_total.labels(type=frame_type, result=result).inc()


def record_call_transition(status: str) -> None:
    call_transitions_total.labels(status=status).inc()


def record_message_relayed(status: str) -> None:
    messages_relayed_total.labels(status=status).inc()


def connection_opened() -> None:
    ws_connections.labels(state="open").inc()


def connection_closed() -> None:
    ws_connections.labels(state="open").dec()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
