"""
Prometheus Metrics
==================
Proxy counters exposed on the dashboard /metrics endpoint.
"""

from prometheus_client import Counter, Gauge, Histogram

CALLS = Counter(
    "tollgate_calls_total",
    "Proxied calls by model, streaming mode and status code",
    ["model", "stream", "status"],
)

TOKENS = Counter(
    "tollgate_tokens_total",
    "Tokens observed in proxied calls",
    ["model", "kind"],
)

COST = Counter(
    "tollgate_cost_usd_total",
    "Estimated spend in USD",
    ["model"],
)

LATENCY = Histogram(
    "tollgate_call_latency_seconds",
    "Wall-clock latency from request arrival to body completion",
    buckets=(0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)

REROUTES = Counter(
    "tollgate_reroutes_total",
    "Requests downgraded to a cheaper model",
    ["from_model", "to_model"],
)

RATE_LIMIT_HITS = Counter(
    "tollgate_rate_limit_hits_total",
    "Upstream 429 responses",
)

TOKENS_REMAINING = Gauge(
    "tollgate_tokens_remaining",
    "Tokens remaining in the current quota window",
)

ALERTS = Counter(
    "tollgate_alerts_total",
    "Alerts raised by type",
    ["type"],
)

UPSTREAM_ERRORS = Counter(
    "tollgate_upstream_errors_total",
    "Upstream connection failures by reason",
    ["reason"],
)
