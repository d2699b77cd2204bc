"""Prometheus metrics for the Cloudflare Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "cloudflare_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "cloudflare_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

error_total = Counter(
    "cloudflare_operator_error_total",
    "Total number of reconciliation errors",
    ["kind", "error_type"],
)

resource_status_total = Counter(
    "cloudflare_operator_resource_status_total",
    "Resource status transitions",
    ["kind", "status"],
)

# Optimistic concurrency metrics
conflict_retries_total = Counter(
    "cloudflare_operator_conflict_retries_total",
    "Total number of version conflicts absorbed by retrying",
    ["kind"],
)

# Tunnel lifecycle metrics
tunnel_lifecycle_total = Counter(
    "cloudflare_operator_tunnel_lifecycle_total",
    "Tunnel lifecycle operations",
    ["operation", "result"],
)

# Configuration aggregation metrics
config_sync_total = Counter(
    "cloudflare_operator_config_sync_total",
    "Tunnel configuration syncs",
    ["result"],
)

ownership_conflicts_total = Counter(
    "cloudflare_operator_ownership_conflicts_total",
    "Writes refused because a shared record is owned by another resource",
    ["kind"],
)

# API call metrics
api_call_total = Counter(
    "cloudflare_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "cloudflare_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)

rate_limit_hits_total = Counter(
    "cloudflare_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
