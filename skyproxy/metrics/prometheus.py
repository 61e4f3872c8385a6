"""Prometheus metrics - minimal implementation."""
from prometheus_client import Counter, Gauge, Histogram

# Completed client requests
requests_total = Counter(
    "skyproxy_requests_total",
    "Total chat completion requests",
    ["provider", "stream", "outcome"],
)

# End-to-end request latency (streaming: until the response is committed)
request_latency_ms = Histogram(
    "skyproxy_request_latency_ms",
    "Request latency in milliseconds",
    ["provider", "stream"],
    buckets=[10, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000, 60000],
)

# Errors counter with detailed labels
errors_total = Counter(
    "skyproxy_errors_total",
    "Total errors returned to clients",
    ["provider", "error_type", "upstream_status"],
)

upstream_retries_total = Counter(
    "skyproxy_upstream_retries_total",
    "Total upstream retry attempts",
    ["provider"],
)

# Concurrency limiter state
inflight_requests = Gauge(
    "skyproxy_inflight_requests",
    "Concurrency permits currently held",
    ["provider"],
)

queued_requests = Gauge(
    "skyproxy_queued_requests",
    "Requests waiting for a concurrency permit",
    ["provider"],
)

stream_terminations_total = Counter(
    "skyproxy_stream_terminations_total",
    "Streaming responses by how they ended",
    ["provider", "reason"],
)
