"""
Prometheus metrics for the quoting service.
"""

from prometheus_client import Counter, Gauge, Histogram


# ── Quote Processing ─────────────────────────────────────────
quotes_processed_total = Counter(
    "quotes_processed_total",
    "Quotes that finished document analysis",
    ["processing_status"],
)

files_analyzed_total = Counter(
    "files_analyzed_total",
    "Quote files run through document analysis",
    ["ai_processing_status"],
)

quote_processing_duration_seconds = Histogram(
    "quote_processing_duration_seconds",
    "Time to analyse all files of a quote",
    buckets=[1, 5, 10, 20, 30, 45, 60, 120, 300],
)

# ── State Machine ────────────────────────────────────────────
quote_transitions_total = Counter(
    "quote_transitions_total",
    "Quote status transitions applied",
    ["from_status", "to_status"],
)

quote_transitions_rejected_total = Counter(
    "quote_transitions_rejected_total",
    "Transitions refused as illegal or stale",
    ["reason"],
)

# ── HITL ─────────────────────────────────────────────────────
hitl_gate_decisions_total = Counter(
    "hitl_gate_decisions_total",
    "HITL threshold gate outcomes",
    ["outcome"],
)

hitl_reviews_opened_total = Counter(
    "hitl_reviews_opened_total",
    "HITL reviews opened, by trigger reason",
    ["trigger_reason"],
)

hitl_queue_depth = Gauge(
    "hitl_queue_depth",
    "Current number of HITL reviews by status",
    ["status"],
)

# ── Orders ───────────────────────────────────────────────────
order_cancellations_total = Counter(
    "order_cancellations_total",
    "Order cancellations by refund status",
    ["refund_status"],
)

# ── Notifications ────────────────────────────────────────────
notifications_total = Counter(
    "notifications_total",
    "Notification attempts by event and outcome",
    ["event", "outcome"],
)

# ── External APIs ────────────────────────────────────────────
external_api_cost_usd = Counter(
    "external_api_cost_usd_total",
    "Cumulative cost of external API calls in USD",
    ["engine_name", "operation"],
)

external_api_latency_seconds = Histogram(
    "external_api_latency_seconds",
    "Latency of external API calls",
    ["engine_name", "operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)
