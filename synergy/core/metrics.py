from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

POLICY_DECISIONS_TOTAL = Counter(
    "synergy_policy_decisions_total",
    "Permission checks grouped by outcome and agent role",
    labelnames=("decision", "role"),
)

POLICY_TEMPORARY_GRANTS = Gauge(
    "synergy_policy_temporary_grants",
    "Temporary permissions currently installed",
)

AUDIT_FLUSH_TOTAL = Counter(
    "synergy_audit_flush_total",
    "Audit buffer flush attempts by outcome",
    labelnames=("outcome",),
)

AUDIT_BUFFERED_ENTRIES = Gauge(
    "synergy_audit_buffered_entries",
    "Audit entries waiting in memory for the next flush",
)

TASK_TRANSITIONS_TOTAL = Counter(
    "synergy_task_transitions_total",
    "Task lifecycle transitions by target status",
    labelnames=("status",),
)

TASK_LATENCY_SECONDS = Histogram(
    "synergy_task_latency_seconds",
    "Wall-clock time from task start to a terminal status",
    labelnames=("priority", "outcome"),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

BIDDING_CANDIDATES = Histogram(
    "synergy_bidding_candidates",
    "Number of agents bidding per assignment round",
    buckets=(0, 1, 2, 3, 5, 8, 13, 21, 34),
)

BIDDING_OUTCOMES_TOTAL = Counter(
    "synergy_bidding_outcomes_total",
    "Assignment rounds by outcome",
    labelnames=("outcome",),
)

ENSEMBLE_OUTCOMES_TOTAL = Counter(
    "synergy_ensemble_outcomes_total",
    "Ensemble votes grouped by consensus result",
    labelnames=("consensus",),
)

CONFLICTS_TOTAL = Counter(
    "synergy_conflicts_total",
    "Detected agent disagreements by severity",
    labelnames=("severity",),
)

DECISIONS_TOTAL = Counter(
    "synergy_decisions_total",
    "Governance decisions by type and resulting status",
    labelnames=("type", "status"),
)

DECISIONS_PENDING = Gauge(
    "synergy_decisions_pending",
    "Decisions awaiting a human verdict",
)

ROLLBACK_OPERATIONS_TOTAL = Counter(
    "synergy_rollback_operations_total",
    "Backup, restore and cleanup operations by outcome",
    labelnames=("operation", "outcome"),
)

COLLABORATIONS_TOTAL = Counter(
    "synergy_collaborations_total",
    "Agent-to-agent help requests by outcome",
    labelnames=("outcome",),
)

EVENT_DELIVERY_FAILURES_TOTAL = Counter(
    "synergy_event_delivery_failures_total",
    "Event deliveries abandoned after exhausting retries",
    labelnames=("topic",),
)


def increment_policy_decision(*, decision: str, role: str) -> None:
    POLICY_DECISIONS_TOTAL.labels(decision=decision, role=role or "unknown").inc()


def set_temporary_grants(*, count: int) -> None:
    POLICY_TEMPORARY_GRANTS.set(max(count, 0))


def record_audit_flush(*, outcome: str, buffered: int) -> None:
    AUDIT_FLUSH_TOTAL.labels(outcome=outcome).inc()
    AUDIT_BUFFERED_ENTRIES.set(max(buffered, 0))


def set_audit_buffered(*, count: int) -> None:
    AUDIT_BUFFERED_ENTRIES.set(max(count, 0))


def record_task_transition(*, status: str) -> None:
    TASK_TRANSITIONS_TOTAL.labels(status=status).inc()


def observe_task_latency(*, priority: str, outcome: str, latency: float) -> None:
    TASK_LATENCY_SECONDS.labels(priority=priority, outcome=outcome).observe(max(latency, 0.0))


def observe_bidding_round(*, candidates: int, awarded: bool) -> None:
    BIDDING_CANDIDATES.observe(max(candidates, 0))
    BIDDING_OUTCOMES_TOTAL.labels(outcome="awarded" if awarded else "no_winner").inc()


def increment_ensemble_outcome(*, consensus: bool) -> None:
    ENSEMBLE_OUTCOMES_TOTAL.labels(consensus=str(consensus).lower()).inc()


def increment_conflict(*, severity: str) -> None:
    CONFLICTS_TOTAL.labels(severity=severity).inc()


def record_decision(*, decision_type: str, status: str) -> None:
    DECISIONS_TOTAL.labels(type=decision_type, status=status).inc()


def set_pending_decisions(*, count: int) -> None:
    DECISIONS_PENDING.set(max(count, 0))


def record_rollback_operation(*, operation: str, outcome: str) -> None:
    ROLLBACK_OPERATIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def increment_collaboration(*, success: bool) -> None:
    COLLABORATIONS_TOTAL.labels(outcome="success" if success else "failure").inc()


def increment_event_delivery_failure(*, topic: str) -> None:
    EVENT_DELIVERY_FAILURES_TOTAL.labels(topic=topic).inc()


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and its content type, ready to serve from a /metrics route."""
    return generate_latest(), CONTENT_TYPE_LATEST
