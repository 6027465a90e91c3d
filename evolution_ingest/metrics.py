"""
Prometheus metrics for the webhook service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (event, result)
- Counters for identity resolution, conversation merges, memory sync
  and automation triggers

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


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

# result: processed, ignored, duplicate, unresolved, rate_limited,
# invalid_payload, unauthorized, unknown_instance, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Gateway webhook outcomes",
    labelnames=["event", "result"]
)

# strategy: direct, event_participant, message_participant, contacts_lookup,
# lid_digits, unresolved
identity_resolutions_total = Counter(
    "identity_resolutions_total",
    "Contact identity resolutions by winning strategy",
    labelnames=["strategy"]
)

conversation_merges_total = Counter(
    "conversation_merges_total",
    "Duplicate conversations merged into a primary conversation"
)

# outcome: storage_success, storage_failure, storage_skipped
memory_sync_total = Counter(
    "memory_sync_total",
    "Semantic memory write outcomes",
    labelnames=["outcome"]
)

# outcome: submitted, skipped, completed, failed
automation_triggers_total = Counter(
    "automation_triggers_total",
    "Automation (auto-reply) invocations",
    labelnames=["outcome"]
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


def record_webhook_outcome(event: str, result: str) -> None:
    webhook_events_total.labels(event=event or "unknown", result=result).inc()


def record_identity_resolution(strategy: str) -> None:
    identity_resolutions_total.labels(strategy=strategy).inc()


def record_conversation_merges(count: int) -> None:
    if count > 0:
        conversation_merges_total.inc(count)


def record_memory_sync(outcome: str) -> None:
    memory_sync_total.labels(outcome=outcome).inc()


def record_automation(outcome: str) -> None:
    automation_triggers_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
