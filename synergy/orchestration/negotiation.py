from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..core.config import BiddingSettings, ProviderConfig
from ..core.logging import get_logger
from ..core.metrics import observe_bidding_round
from ..services.collaboration import CollaborationHistory
from .enums import TaskPriority
from .state import OrgAgent, Task

logger = get_logger(name=__name__)

SkillMatcher = Callable[[Sequence[str], str], bool]


def skill_matches(agent_skills: Sequence[str], required_skill: str) -> bool:
    """Loose skill match: the requirement appears inside any agent skill, ignoring case.

    An agent skilled in "python-backend" satisfies "python", and one skilled
    in "python" also satisfies "py". Pass a different matcher to
    ResourceOptimizer for stricter assignment.
    """
    needle = required_skill.strip().lower()
    if not needle:
        return False
    return any(needle in skill.lower() for skill in agent_skills)


@dataclass(slots=True, frozen=True)
class Bid:
    agent_id: str
    token_estimate: int
    confidence: float
    skill_match_score: float
    reasoning: str

    @property
    def roi(self) -> float:
        return self.confidence / self.token_estimate if self.token_estimate > 0 else 0.0

    def as_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "token_estimate": self.token_estimate,
            "confidence": round(self.confidence, 4),
            "skill_match_score": round(self.skill_match_score, 4),
            "roi": self.roi,
            "reasoning": self.reasoning,
        }


@dataclass(slots=True, frozen=True)
class ProviderSelection:
    provider: str
    reason: str


class ResourceOptimizer:
    """Competitive bidding between agents plus provider selection for a task."""

    def __init__(
        self,
        settings: BiddingSettings | None = None,
        *,
        history: CollaborationHistory | None = None,
        skill_matcher: SkillMatcher = skill_matches,
    ) -> None:
        self._settings = settings or BiddingSettings()
        self._history = history
        self._matches = skill_matcher

    def negotiate_provider(self, task: Task) -> ProviderSelection:
        enabled = [config for config in self._settings.providers if config.enabled]

        # A specialist only makes sense when there is more than one to choose from.
        if len(enabled) > 1:
            for config in enabled:
                name = config.name.lower()
                matched = next((skill for skill in task.required_skills if skill.lower() in name), None)
                if matched is not None:
                    return ProviderSelection(config.provider, f"Specialist match on skill '{matched}' ({config.name})")

        if task.priority in {TaskPriority.CRITICAL, TaskPriority.HIGH}:
            preferred = self._first_of_class(enabled, self._settings.priority_provider)
            if preferred is not None:
                return ProviderSelection(preferred.provider, f"{task.priority.value} priority task")

        if len(set(skill.lower() for skill in task.required_skills)) > self._settings.breadth_skill_threshold:
            breadth = self._first_of_class(enabled, self._settings.breadth_provider)
            if breadth is not None:
                return ProviderSelection(breadth.provider, "Task spans many skills")

        return ProviderSelection(self._settings.default_provider, "Default provider")

    def skill_match_score(self, agent: OrgAgent, task: Task) -> tuple[int, int, float]:
        required = task.required_skills
        matched = sum(1 for skill in required if self._matches(agent.skills, skill))
        total = max(len(required), 1)
        return matched, len(required), matched / total

    def conduct_bidding(self, task: Task, candidates: Iterable[OrgAgent]) -> list[Bid]:
        bids: list[Bid] = []
        for agent in candidates:
            matched, required, score = self.skill_match_score(agent, task)
            token_estimate = math.floor(
                self._settings.base_tokens + 2 * len(task.description) + 5 * (100 - agent.success_rate)
            )
            confidence = (agent.success_rate / 100) * (0.5 + 0.5 * score)
            bids.append(
                Bid(
                    agent_id=agent.id,
                    token_estimate=token_estimate,
                    confidence=confidence,
                    skill_match_score=score,
                    reasoning=f"Matched {matched}/{required} skills. Skill match: {round(score * 100)}%.",
                )
            )
        return bids

    @staticmethod
    def determine_winner(bids: Sequence[Bid]) -> Bid | None:
        winner: Bid | None = None
        for bid in bids:
            # Strictly greater keeps the earliest bid on ties.
            if winner is None or bid.roi > winner.roi:
                winner = bid
        return winner

    def select_agent(self, task: Task, candidates: Sequence[OrgAgent]) -> tuple[OrgAgent | None, list[Bid]]:
        bids = self.conduct_bidding(task, candidates)
        winner = self.determine_winner(bids)
        observe_bidding_round(candidates=len(bids), awarded=winner is not None)
        if winner is None:
            logger.info("bidding_no_winner", task_id=task.id, candidates=len(bids))
            return None, bids
        agent = next(candidate for candidate in candidates if candidate.id == winner.agent_id)
        logger.info(
            "bidding_awarded",
            task_id=task.id,
            agent_id=agent.id,
            roi=winner.roi,
            candidates=len(bids),
        )
        return agent, bids

    def find_helper(self, requester: OrgAgent, candidates: Sequence[OrgAgent]) -> tuple[OrgAgent | None, str]:
        """Choose a collaborator, preferring proven pairs over raw skill fit."""
        if not candidates:
            return None, "none"
        if self._history is not None:
            best = self._history.find_best_helper(requester.id, [candidate.id for candidate in candidates])
            if best is not None:
                return next(candidate for candidate in candidates if candidate.id == best), "history"
        return candidates[0], "skills"

    @staticmethod
    def _first_of_class(configs: Sequence[ProviderConfig], provider: str) -> ProviderConfig | None:
        wanted = provider.lower()
        return next((config for config in configs if config.provider.lower() == wanted), None)


__all__ = ["Bid", "ProviderSelection", "ResourceOptimizer", "SkillMatcher", "skill_matches"]
