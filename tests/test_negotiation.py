from __future__ import annotations

import pytest

from synergy.core.config import BiddingSettings, ProviderConfig
from synergy.orchestration.enums import TaskPriority
from synergy.orchestration.negotiation import Bid, ResourceOptimizer, skill_matches
from synergy.orchestration.state import OrgAgent, Task
from synergy.services.collaboration import CollaborationHistory, CollaborationRecord


def _agent(name: str, skills: list[str], success_rate: float = 100.0) -> OrgAgent:
    return OrgAgent(name=name, role="coder", skills=skills, success_rate=success_rate)


def test_skill_match_is_case_insensitive_substring() -> None:
    assert skill_matches(["Python-Backend"], "python")
    assert skill_matches(["python"], "PY")
    assert not skill_matches(["rust"], "python")
    assert not skill_matches(["python"], "  ")


def test_highest_roi_wins_over_highest_confidence() -> None:
    bids = [
        Bid(agent_id="a", token_estimate=500, confidence=0.8, skill_match_score=1.0, reasoning=""),
        Bid(agent_id="b", token_estimate=100, confidence=0.4, skill_match_score=0.5, reasoning=""),
    ]

    winner = ResourceOptimizer.determine_winner(bids)

    assert winner is not None and winner.agent_id == "b"


def test_ties_keep_the_earliest_bid() -> None:
    bids = [
        Bid(agent_id="first", token_estimate=200, confidence=0.5, skill_match_score=1.0, reasoning=""),
        Bid(agent_id="second", token_estimate=200, confidence=0.5, skill_match_score=1.0, reasoning=""),
    ]

    assert ResourceOptimizer.determine_winner(bids).agent_id == "first"
    assert ResourceOptimizer.determine_winner([]) is None


def test_bids_follow_the_estimate_formula() -> None:
    optimizer = ResourceOptimizer(BiddingSettings(base_tokens=500))
    task = Task(title="Parser", description="x" * 10, required_skills=["python", "sql"])
    agent = _agent("dev", ["python"], success_rate=80.0)

    [bid] = optimizer.conduct_bidding(task, [agent])

    assert bid.token_estimate == 500 + 20 + 100
    assert bid.confidence == pytest.approx(0.8 * 0.75)
    assert bid.reasoning == "Matched 1/2 skills. Skill match: 50%."


def test_select_agent_returns_the_winner() -> None:
    optimizer = ResourceOptimizer()
    task = Task(title="Parser", required_skills=["python"])
    strong = _agent("strong", ["python"])
    weak = _agent("weak", ["python"], success_rate=40.0)

    agent, bids = optimizer.select_agent(task, [weak, strong])

    assert agent is strong
    assert len(bids) == 2
    assert optimizer.select_agent(task, []) == (None, [])


def test_provider_negotiation_order() -> None:
    settings = BiddingSettings(
        providers=[
            ProviderConfig(name="Claude Coding", provider="claude"),
            ProviderConfig(name="GPT Research", provider="openai"),
        ]
    )
    optimizer = ResourceOptimizer(settings)

    specialist = optimizer.negotiate_provider(Task(title="t", required_skills=["research"]))
    urgent = optimizer.negotiate_provider(Task(title="t", priority=TaskPriority.CRITICAL))
    broad = optimizer.negotiate_provider(Task(title="t", required_skills=["kotlin", "swift", "figma", "excel"]))
    plain = optimizer.negotiate_provider(Task(title="t"))

    assert specialist.provider == "openai"
    assert urgent.provider == "claude"
    assert broad.provider == "openai"
    assert plain.provider == "default"


def test_single_provider_never_counts_as_specialist() -> None:
    settings = BiddingSettings(providers=[ProviderConfig(name="Research Bot", provider="openai")])

    selection = ResourceOptimizer(settings).negotiate_provider(Task(title="t", required_skills=["research"]))

    assert selection.provider == "default"


@pytest.mark.asyncio
async def test_find_helper_prefers_history_then_skills(tmp_path) -> None:
    history = CollaborationHistory(tmp_path)
    optimizer = ResourceOptimizer(history=history)
    requester = _agent("req", ["planning"])
    first = _agent("first", ["python"])
    proven = _agent("proven", ["python"])

    assert optimizer.find_helper(requester, [first, proven]) == (first, "skills")

    await history.record(
        CollaborationRecord(
            requester_id=requester.id,
            requester_name=requester.name,
            helper_id=proven.id,
            helper_name=proven.name,
            required_skills=("python",),
            task_description="help",
            outcome="done",
            success=True,
            duration_seconds=1.0,
        )
    )

    assert optimizer.find_helper(requester, [first, proven]) == (proven, "history")
    assert optimizer.find_helper(requester, []) == (None, "none")
