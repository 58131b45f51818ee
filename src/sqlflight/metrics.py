from prometheus_client import Counter, Gauge, Histogram

# --- Statement Metrics ---
statements_submitted_total = Counter(
    "sqlflight_statements_submitted_total",
    "Total number of metadata-phase submissions.",
    ["kind", "status"],  # e.g., kind="statement" / "prepared" / "catalog", status="success" / "error"
)

prepared_statements_open = Gauge(
    "sqlflight_prepared_statements_open",
    "Number of prepared statement handles currently open on the server.",
)

# --- Endpoint Metrics ---
endpoints_finished_total = Counter(
    "sqlflight_endpoints_finished_total",
    "Total number of endpoints that reached a terminal outcome.",
    ["outcome"],  # "completed" / "failed" / "cancelled"
)

endpoint_location_fallbacks_total = Counter(
    "sqlflight_endpoint_location_fallbacks_total",
    "Total number of times a fetcher moved on to the next candidate location.",
)

active_fetchers = Gauge(
    "sqlflight_active_fetchers",
    "Number of endpoint fetchers currently connected and pulling.",
)

endpoint_fetch_duration_seconds = Histogram(
    "sqlflight_endpoint_fetch_duration_seconds",
    "Histogram of time spent draining a single endpoint.",
)

batches_received_total = Counter(
    "sqlflight_batches_received_total",
    "Total number of record batches decoded from data streams.",
)

rows_received_total = Counter(
    "sqlflight_rows_received_total",
    "Total number of rows decoded from data streams.",
)

# --- Execution Metrics ---
executions_finished_total = Counter(
    "sqlflight_executions_finished_total",
    "Total number of executions by terminal state.",
    ["state"],
)
