"""Prometheus metrics for the alerting service.

Each metric registers itself in the prometheus_client global REGISTRY on
construction; ``start_http_server()`` in alerter.main serves them on
GET /metrics.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Consumption
# ---------------------------------------------------------------------------
events_consumed = Counter(
    "alerter_events_consumed_total",
    "Log events accepted by the guard and matched against rules",
)
duplicate_events = Counter(
    "alerter_duplicate_events_total",
    "Redelivered events skipped by the idempotency guard",
)
malformed_events = Counter(
    "alerter_malformed_events_total",
    "Records that could not be decoded into a log event",
)
window_appends = Counter(
    "alerter_window_appends_total",
    "Entries appended to sliding windows",
    ["rule"],
)
processing_failures = Counter(
    "alerter_processing_failures_total",
    "Event processing attempts that raised",
)
dead_lettered = Counter(
    "alerter_dead_lettered_total",
    "Records published to the dead-letter topic",
    ["reason"],
)
consumer_errors = Counter(
    "alerter_consumer_errors_total",
    "Errors reported by the Kafka consumer",
)

# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
alerts_fired = Counter(
    "alerter_alerts_fired_total",
    "Alerts created and persisted",
    ["rule"],
)
alerts_suppressed = Counter(
    "alerter_alerts_suppressed_total",
    "Threshold crossings suppressed by cooldown",
    ["rule"],
)
evaluation_errors = Counter(
    "alerter_evaluation_errors_total",
    "Rule evaluations that failed and were skipped for the tick",
    ["rule"],
)
window_count = Gauge(
    "alerter_window_count",
    "Entries inside the rule's window at the last evaluation",
    ["rule"],
)
tick_duration = Histogram(
    "alerter_evaluation_tick_seconds",
    "Wall time of one evaluation tick over all rules",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)
