"""Prometheus metrics for the turn orchestrator."""

from prometheus_client import Counter, Histogram

TURNS = Counter(
    "spirits_turns_total",
    "Customer turns processed",
    labelnames=["outcome"],
)

STAGE_LATENCY = Histogram(
    "spirits_stage_latency_seconds",
    "Latency of individual pipeline stages",
    labelnames=["stage"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

STAGE_ERRORS = Counter(
    "spirits_stage_errors_total",
    "Stage callback failures",
    labelnames=["stage", "fatal"],
)

CONVERSATION_LOCKS = Counter(
    "spirits_conversation_locks_total",
    "Conversations locked during a turn",
    labelnames=["kind"],
)

DUPLICATES_REMOVED = Counter(
    "spirits_duplicate_messages_removed_total",
    "Generated messages dropped as exact duplicates",
)


def lock_kind(reason: str | None) -> str:
    """Collapse a free-text lock reason into a low-cardinality label."""
    if not reason:
        return "unknown"
    if reason.startswith("Max lock attempts exceeded"):
        return "max_attempts"
    if reason.startswith("API: "):
        return "api"
    if reason == "Duplicate message":
        return "duplicate"
    if reason == "App instructed forward":
        return "forward"
    return "other"
