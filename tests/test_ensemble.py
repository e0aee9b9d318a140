from __future__ import annotations

import pytest

from synergy.core.config import EnsembleSettings
from synergy.orchestration.enums import AgentStatus
from synergy.orchestration.ensemble import EnsembleManager
from synergy.orchestration.executors import AgentResponse
from synergy.orchestration.state import OrgAgent
from synergy.services.disputes import ConflictDetector
from tests.helpers.stubs import StubAgentExecutor


def _agents(*names: str) -> list[OrgAgent]:
    return [OrgAgent(name=name, role="reviewer") for name in names]


def _answers(mapping: dict[str, str | AgentResponse]) -> StubAgentExecutor:
    async def handler(system_prompt, message, context):
        return mapping[context.agent.name]

    return StubAgentExecutor(handler)


@pytest.mark.asyncio
async def test_two_of_three_agreeing_reaches_consensus() -> None:
    agents = _agents("alpha", "beta", "gamma")
    executor = _answers({"alpha": "Yes", "beta": " yes ", "gamma": "No"})
    manager = EnsembleManager(executor, lambda: agents, detector=ConflictDetector())

    result = await manager.ensemble_check("Is the migration safe?")

    assert result.consensus
    assert result.winner == "Yes"
    assert result.agreement_score == pytest.approx(2 / 3)
    assert len(result.conflicts) == 2
    assert all(message == "VOTE: Is the migration safe?" for _, message, _ in executor.calls)


@pytest.mark.asyncio
async def test_split_vote_has_no_winner() -> None:
    agents = _agents("alpha", "beta", "gamma")
    executor = _answers({"alpha": "red", "beta": "green", "gamma": "blue"})
    manager = EnsembleManager(executor, lambda: agents)

    result = await manager.ensemble_check("Pick a colour")

    assert not result.consensus
    assert result.winner is None
    assert result.as_dict()["agreement_score"] == pytest.approx(0.3333)


@pytest.mark.asyncio
async def test_too_few_idle_agents_returns_empty_result() -> None:
    agents = _agents("alpha", "beta", "gamma")
    agents[2].status = AgentStatus.BUSY
    executor = _answers({"alpha": "yes", "beta": "yes"})
    manager = EnsembleManager(executor, lambda: agents)

    result = await manager.ensemble_check("Deploy?")

    assert not result.consensus
    assert result.votes == []
    assert executor.calls == []


@pytest.mark.asyncio
async def test_failed_votes_are_dropped_and_confidence_is_clamped() -> None:
    agents = _agents("alpha", "beta", "gamma")

    async def handler(system_prompt, message, context):
        if context.agent.name == "gamma":
            raise RuntimeError("model unavailable")
        return AgentResponse(text="approve", confidence=1.7)

    manager = EnsembleManager(StubAgentExecutor(handler), lambda: agents)

    result = await manager.ensemble_check("Approve release?")

    assert len(result.votes) == 2
    assert result.consensus
    assert all(vote.confidence == 1.0 for vote in result.votes)


@pytest.mark.asyncio
async def test_explicit_agent_ids_and_default_confidence() -> None:
    agents = _agents("alpha", "beta", "gamma")
    executor = _answers({"alpha": "yes", "beta": "yes", "gamma": "no"})
    manager = EnsembleManager(executor, lambda: agents, settings=EnsembleSettings(default_vote_confidence=0.7))

    result = await manager.ensemble_check("Ship?", agent_ids=[agents[0].id, agents[1].id], min_agents=2)

    assert [vote.agent_id for vote in result.votes] == [agents[0].id, agents[1].id]
    assert all(vote.confidence == 0.7 for vote in result.votes)
