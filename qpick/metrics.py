"""Prometheus metrics for qpick."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("qpick", "qpick application info")
app_info.info({"version": "0.1.0", "name": "qpick"})

# Report metrics
reports_submitted_total = Counter(
    "qpick_reports_submitted_total",
    "Total number of found/not-found reports",
    ["status", "result"],
)

# Dispatcher metrics
notify_triggers_total = Counter(
    "qpick_notify_triggers_total",
    "Dispatcher invocations by outcome",
    ["outcome"],
)

push_deliveries_total = Counter(
    "qpick_push_deliveries_total",
    "Push delivery attempts by result",
    ["result"],
)

push_delivery_duration_seconds = Histogram(
    "qpick_push_delivery_duration_seconds",
    "Time spent delivering a single push message",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

# Search metrics
search_requests_total = Counter(
    "qpick_search_requests_total",
    "Total number of availability searches",
    ["status"],
)

search_duration_seconds = Histogram(
    "qpick_search_duration_seconds",
    "Time spent building a search response",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

score_cache_lookups_total = Counter(
    "qpick_score_cache_lookups_total",
    "Score cache lookups",
    ["result"],
)

# Webhook metrics
webhook_requests_total = Counter(
    "qpick_webhook_requests_total",
    "Total number of notification webhook requests",
    ["status"],
)


def record_report(status: str, result: str):
    """Record a report submission (result: accepted, already_voted, error)."""
    reports_submitted_total.labels(status=status, result=result).inc()


def record_dispatch(outcome: str):
    """Record a dispatcher outcome."""
    notify_triggers_total.labels(outcome=outcome).inc()


def record_delivery(result: str, duration: float):
    """Record a push delivery (result: sent, gone, failed)."""
    push_deliveries_total.labels(result=result).inc()
    push_delivery_duration_seconds.observe(duration)


def record_search(success: bool, duration: float):
    """Record a search request."""
    status = "success" if success else "error"
    search_requests_total.labels(status=status).inc()
    search_duration_seconds.observe(duration)


def record_cache_lookup(hit: bool):
    """Record a score cache lookup."""
    score_cache_lookups_total.labels(result="hit" if hit else "miss").inc()
