from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

# Request metrics
REQUEST_COUNT = Counter(
    "portal_requests_total",
    "Total requests",
    ["method", "endpoint", "status"]
)

REQUEST_LATENCY = Histogram(
    "portal_request_duration_seconds",
    "Request latency",
    ["method", "endpoint"]
)

# Workflow metrics
PAPER_STATUS_CHANGES = Counter(
    "portal_paper_status_changes_total",
    "Paper status transitions",
    ["from_status", "to_status"]
)

ACCESS_APPROVALS = Counter(
    "portal_access_approvals_total",
    "Access requests approved",
    ["email_sent"]
)

# Chat metrics
CHAT_CONNECTIONS = Gauge(
    "portal_chat_connections",
    "Open chat connections"
)

CHAT_MESSAGES = Counter(
    "portal_chat_messages_total",
    "Chat messages processed",
    ["status"]
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    "portal_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["breaker"]
)


def get_metrics_content():
    """Get Prometheus metrics content."""
    return generate_latest()


__all__ = [
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "PAPER_STATUS_CHANGES",
    "ACCESS_APPROVALS",
    "CHAT_CONNECTIONS",
    "CHAT_MESSAGES",
    "CIRCUIT_BREAKER_STATE",
    "CONTENT_TYPE_LATEST",
    "get_metrics_content",
]
