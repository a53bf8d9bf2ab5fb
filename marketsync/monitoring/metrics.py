"""Prometheus metrics for monitoring."""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# LWA token operations
lwa_token_refresh_total = Counter(
    "lwa_token_refresh_total",
    "Total number of LWA token refreshes",
    ["status"],
    registry=registry,
)

# SP-API operations
spapi_requests_total = Counter(
    "spapi_requests_total",
    "Total number of SP-API requests",
    ["endpoint", "status_code"],
    registry=registry,
)

spapi_errors_total = Counter(
    "spapi_errors_total",
    "Total number of SP-API errors",
    ["error_type"],
    registry=registry,
)

# Report lifecycle
report_poll_attempts_total = Counter(
    "report_poll_attempts_total",
    "Total number of report status polls",
    ["report_type"],
    registry=registry,
)

report_jobs_total = Counter(
    "report_jobs_total",
    "Report jobs by terminal outcome",
    ["report_type", "status"],
    registry=registry,
)

report_document_bytes = Histogram(
    "report_document_bytes",
    "Size of downloaded report documents",
    buckets=(1e3, 1e4, 1e5, 1e6, 1e7, 1e8),
    registry=registry,
)

# Sync runs
sync_runs_total = Counter(
    "sync_runs_total",
    "Sync runs by outcome",
    ["report_type", "status"],
    registry=registry,
)

sync_rows_upserted_total = Counter(
    "sync_rows_upserted_total",
    "Fact rows upserted into the backend",
    ["report_type"],
    registry=registry,
)

active_sync_runs = Gauge(
    "active_sync_runs",
    "Number of currently running sync runs",
    registry=registry,
)

# Classification
classification_heuristic_total = Counter(
    "classification_heuristic_total",
    "Financial entries bucketed by the sign heuristic",
    registry=registry,
)
