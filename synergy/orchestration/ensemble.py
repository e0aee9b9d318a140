from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from ..core.config import EnsembleSettings
from ..core.logging import get_logger
from ..core.metrics import increment_ensemble_outcome
from ..services.disputes import Conflict, ConflictDetector, EnsembleVote
from ..services.events import EventBus
from .enums import AgentStatus
from .executors import AgentExecutor, ExecutionContext, coerce_response
from .state import OrgAgent

logger = get_logger(name=__name__)

AgentDirectory = Callable[[], Iterable[OrgAgent]]


@dataclass(slots=True)
class EnsembleResult:
    consensus: bool
    votes: list[EnsembleVote]
    agreement_score: float
    winner: str | None = None
    conflicts: list[Conflict] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "consensus": self.consensus,
            "winner": self.winner,
            "agreement_score": round(self.agreement_score, 4),
            "votes": [vote.as_dict() for vote in self.votes],
            "conflicts": [conflict.as_dict() for conflict in self.conflicts],
        }


def _normalize(answer: str) -> str:
    return answer.strip().lower()


class EnsembleManager:
    """Independent votes from several idle agents, reduced to a consensus answer."""

    def __init__(
        self,
        executor: AgentExecutor,
        agents: AgentDirectory,
        *,
        settings: EnsembleSettings | None = None,
        detector: ConflictDetector | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._executor = executor
        self._agents = agents
        self._settings = settings or EnsembleSettings()
        self._detector = detector
        self._events = events

    async def ensemble_check(
        self,
        task: str,
        agent_ids: Sequence[str] | None = None,
        min_agents: int | None = None,
    ) -> EnsembleResult:
        minimum = min_agents if min_agents is not None else self._settings.min_agents
        participants = self._select(agent_ids, minimum)
        if len(participants) < minimum:
            logger.warning("ensemble_insufficient_agents", available=len(participants), required=minimum)
            increment_ensemble_outcome(consensus=False)
            return EnsembleResult(consensus=False, votes=[], agreement_score=0.0)

        outcomes = await asyncio.gather(
            *(self._vote(agent, task) for agent in participants),
            return_exceptions=True,
        )
        votes: list[EnsembleVote] = []
        for agent, outcome in zip(participants, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("ensemble_vote_failed", agent_id=agent.id, error=str(outcome))
                continue
            votes.append(outcome)

        result = self.analyze_votes(votes)
        if self._detector is not None:
            result.conflicts = self._detector.detect(task, votes)
        increment_ensemble_outcome(consensus=result.consensus)
        logger.info(
            "ensemble_completed",
            votes=len(votes),
            consensus=result.consensus,
            agreement=round(result.agreement_score, 4),
        )
        if self._events is not None:
            self._events.emit("ensemble.completed", {"task": task, **result.as_dict()})
        return result

    def analyze_votes(self, votes: Sequence[EnsembleVote]) -> EnsembleResult:
        if not votes:
            return EnsembleResult(consensus=False, votes=[], agreement_score=0.0)
        groups: dict[str, list[EnsembleVote]] = {}
        for vote in votes:
            groups.setdefault(_normalize(vote.answer), []).append(vote)
        largest: list[EnsembleVote] = []
        for members in groups.values():
            if len(members) > len(largest):
                largest = members
        agreement = len(largest) / len(votes)
        consensus = agreement >= self._settings.consensus_threshold
        return EnsembleResult(
            consensus=consensus,
            votes=list(votes),
            agreement_score=agreement,
            winner=largest[0].answer.strip() if consensus else None,
        )

    def _select(self, agent_ids: Sequence[str] | None, minimum: int) -> list[OrgAgent]:
        idle = [agent for agent in self._agents() if agent.status is AgentStatus.IDLE]
        if agent_ids is not None:
            by_id = {agent.id: agent for agent in idle}
            return [by_id[agent_id] for agent_id in dict.fromkeys(agent_ids) if agent_id in by_id]
        ranked = sorted(idle, key=lambda agent: agent.success_rate, reverse=True)
        return ranked[:minimum]

    async def _vote(self, agent: OrgAgent, task: str) -> EnsembleVote:
        response = coerce_response(
            await self._executor.execute(
                agent.system_prompt,
                f"VOTE: {task}",
                ExecutionContext(agent=agent, data={"mode": "ensemble"}),
            )
        )
        confidence = response.confidence if response.confidence is not None else self._settings.default_vote_confidence
        return EnsembleVote(
            agent_id=agent.id,
            answer=response.text.strip(),
            confidence=max(0.0, min(1.0, confidence)),
            reasoning=response.metadata.get("reasoning") if response.metadata else None,
        )


__all__ = ["AgentDirectory", "EnsembleManager", "EnsembleResult", "EnsembleVote"]
