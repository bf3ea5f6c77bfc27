"""
Prometheus metrics for session settlement.
Exposed by the service at GET /metrics.
"""
from prometheus_client import Counter, Gauge, Histogram

# Terminations by trigger (user, disconnect-grace, heartbeat-timeout, ledger-notice) and outcome
terminations_total = Counter(
    "settlement_terminations_total",
    "Session terminations attempted",
    ["trigger", "outcome"],
)

termination_seconds = Histogram(
    "settlement_termination_seconds",
    "Wall time of one termination (lookup to summary)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

# Best-effort ledger reads that failed (active, history, tutor, student)
ledger_read_failures_total = Counter(
    "settlement_ledger_read_failures_total",
    "Ledger reads that raised",
    ["operation"],
)

fallback_responses_total = Counter(
    "settlement_fallback_responses_total",
    "Placeholder/mock values served because the ledger was unavailable",
    ["operation"],
)

# Cost computed from ledger-reported totals vs local estimation
cost_source_total = Counter(
    "settlement_cost_source_total",
    "Where the final cost came from",
    ["source"],
)

cache_flushes_total = Counter(
    "settlement_cache_flushes_total",
    "Registration cache namespace flushes after ledger recovery",
)

notifications_total = Counter(
    "settlement_notifications_total",
    "session-ended deliveries by path and outcome",
    ["path", "outcome"],
)

live_sessions = Gauge(
    "settlement_live_sessions",
    "Sessions currently tracked by the liveness monitor",
)


def mark_termination(trigger: str, outcome: str) -> None:
    """Increment the termination counter for a trigger/outcome pair."""
    terminations_total.labels(trigger=trigger or "unknown", outcome=outcome).inc()


def mark_read_failure(operation: str) -> None:
    ledger_read_failures_total.labels(operation=operation).inc()


def mark_fallback(operation: str) -> None:
    fallback_responses_total.labels(operation=operation).inc()


def mark_cost_source(source: str) -> None:
    cost_source_total.labels(source=source).inc()


def mark_notification(path: str, outcome: str) -> None:
    """Record one delivery attempt (path: direct|scan|broadcast)."""
    notifications_total.labels(path=path, outcome=outcome).inc()


def set_live_sessions(n: int) -> None:
    live_sessions.set(n)
