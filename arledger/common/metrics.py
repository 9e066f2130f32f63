"""Prometheus metric definitions shared across the ledger, queue and workers."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


events_appended_total = Counter(
    "ar_events_appended_total",
    "Events appended to the event log",
    ["service", "event_type"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Event appends absorbed because the event identity already exists",
    ["service", "event_type"],
)
commands_total = Counter(
    "ar_commands_total",
    "Lifecycle commands executed",
    ["service", "command", "outcome"],
)
concurrency_conflicts_total = Counter(
    "ar_concurrency_conflicts_total",
    "Snapshot writes rejected by optimistic version check",
    ["service"],
)
snapshot_rebuilds_total = Counter(
    "ar_snapshot_rebuilds_total",
    "Snapshots re-derived from the event log",
    ["service", "result"],
)
alerts_queued_total = Counter("alerts_queued_total", "Alerts queued", ["service", "alert_type"])
alerts_deduplicated_total = Counter(
    "alerts_deduplicated_total",
    "Enqueue calls absorbed by an existing dedup key",
    ["service", "alert_type"],
)
alerts_sent_total = Counter("alerts_sent_total", "Alerts delivered", ["service", "alert_type"])
alerts_failed_total = Counter(
    "alerts_failed_total",
    "Alert delivery attempts that failed",
    ["service", "terminal"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
alert_delivery_seconds = Histogram(
    "alert_delivery_seconds",
    "Channel send latency seconds",
    ["service"],
)
alert_queue_pending_total = Gauge(
    "alert_queue_pending_total",
    "Current count of alerts queued or processing",
    ["service"],
)
alert_queue_oldest_pending_age_seconds = Gauge(
    "alert_queue_oldest_pending_age_seconds",
    "Age in seconds of the oldest queued alert that is due",
    ["service"],
)
sweep_duration_seconds = Histogram("sweep_duration_seconds", "Daily sweep duration seconds", ["service"])
sweep_items_total = Counter(
    "sweep_items_total",
    "Items produced or failed per sweep step",
    ["service", "step", "result"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
