from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from synergy.core.metrics import (
    increment_collaboration,
    increment_policy_decision,
    observe_bidding_round,
    observe_task_latency,
    record_decision,
    record_task_transition,
)


def _value(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_observe_task_latency_records_by_priority_and_outcome() -> None:
    labels = {"priority": "high", "outcome": "completed"}
    before = _value("synergy_task_latency_seconds_sum", labels)

    observe_task_latency(priority="high", outcome="completed", latency=3.5)
    observe_task_latency(priority="high", outcome="completed", latency=-1.0)

    assert _value("synergy_task_latency_seconds_sum", labels) == pytest.approx(before + 3.5)


def test_counters_increment_with_their_labels() -> None:
    policy_labels = {"decision": "deny", "role": "unknown"}
    decision_labels = {"type": "hire", "status": "approved"}
    transition_labels = {"status": "review"}
    collaboration_labels = {"outcome": "failure"}
    befores = (
        _value("synergy_policy_decisions_total", policy_labels),
        _value("synergy_decisions_total", decision_labels),
        _value("synergy_task_transitions_total", transition_labels),
        _value("synergy_collaborations_total", collaboration_labels),
    )

    increment_policy_decision(decision="deny", role="")
    record_decision(decision_type="hire", status="approved")
    record_task_transition(status="review")
    increment_collaboration(success=False)

    afters = (
        _value("synergy_policy_decisions_total", policy_labels),
        _value("synergy_decisions_total", decision_labels),
        _value("synergy_task_transitions_total", transition_labels),
        _value("synergy_collaborations_total", collaboration_labels),
    )
    assert afters == tuple(before + 1.0 for before in befores)


def test_bidding_round_counts_outcome() -> None:
    before = _value("synergy_bidding_outcomes_total", {"outcome": "no_winner"})

    observe_bidding_round(candidates=0, awarded=False)

    assert _value("synergy_bidding_outcomes_total", {"outcome": "no_winner"}) == before + 1.0
