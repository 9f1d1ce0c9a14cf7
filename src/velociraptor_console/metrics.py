"""Prometheus metrics for the client layer.

Collection only - exporting (start_http_server, push gateway, ...) is left to
the application that embeds the client.
"""

from prometheus_client import Counter, Histogram

# =============================================================================
# Request Dispatcher Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "velociraptor_client_requests_total",
    "Total number of API requests by outcome",
    ["endpoint", "status"]
)

REQUEST_DURATION = Histogram(
    "velociraptor_client_request_duration_seconds",
    "API request duration in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

REQUEST_RETRIES = Counter(
    "velociraptor_client_request_retries_total",
    "Number of request retries after a transient failure",
    ["endpoint"]
)

# =============================================================================
# Event Stream Metrics
# =============================================================================

STREAM_EVENTS = Counter(
    "velociraptor_stream_events_total",
    "Event stream frames received by type",
    ["type"]
)

STREAM_RECONNECTS = Counter(
    "velociraptor_stream_reconnects_total",
    "Event stream reconnection attempts"
)

# =============================================================================
# Subprocess Bridge Metrics
# =============================================================================

BRIDGE_ROWS = Counter(
    "velociraptor_bridge_rows_total",
    "Rows decoded from subprocess query output"
)
