from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations
from typing import Sequence

from ..core.config import ConflictSettings
from ..core.logging import get_logger
from ..core.metrics import increment_conflict
from ..orchestration.enums import ConflictSeverity
from .events import EventBus

logger = get_logger(name=__name__)

_EXCERPT_LENGTH = 50


@dataclass(slots=True, frozen=True)
class EnsembleVote:
    agent_id: str
    answer: str
    confidence: float
    reasoning: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "answer": self.answer,
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning,
        }


@dataclass(slots=True, frozen=True)
class Conflict:
    task: str
    agents: tuple[str, str]
    answers: tuple[str, str]
    similarity: float
    explanation: str
    severity: ConflictSeverity

    def as_dict(self) -> dict[str, object]:
        return {
            "task": self.task,
            "agents": list(self.agents),
            "answers": list(self.answers),
            "similarity": round(self.similarity, 4),
            "explanation": self.explanation,
            "severity": self.severity.value,
        }


def jaccard_similarity(first: str, second: str) -> float:
    left = set(first.lower().split())
    right = set(second.lower().split())
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


class ConflictDetector:
    """Pairwise disagreement finder for answers given to the same question."""

    def __init__(self, settings: ConflictSettings | None = None, *, events: EventBus | None = None) -> None:
        self._settings = settings or ConflictSettings()
        self._events = events

    def classify_severity(self, first: EnsembleVote, second: EnsembleVote) -> ConflictSeverity:
        if first.confidence < self._settings.low_confidence and second.confidence < self._settings.low_confidence:
            return ConflictSeverity.LOW
        if first.confidence > self._settings.high_confidence and second.confidence > self._settings.high_confidence:
            return ConflictSeverity.HIGH
        return ConflictSeverity.MEDIUM

    def detect(self, task: str, votes: Sequence[EnsembleVote]) -> list[Conflict]:
        if len(votes) < 2:
            return []
        conflicts: list[Conflict] = []
        for first, second in combinations(votes, 2):
            similarity = jaccard_similarity(first.answer, second.answer)
            if similarity >= self._settings.similarity_threshold:
                continue
            conflict = Conflict(
                task=task,
                agents=(first.agent_id, second.agent_id),
                answers=(first.answer, second.answer),
                similarity=similarity,
                explanation=self.explain(first, second),
                severity=self.classify_severity(first, second),
            )
            conflicts.append(conflict)
            increment_conflict(severity=conflict.severity.value)
            logger.info(
                "conflict_detected",
                agents=list(conflict.agents),
                similarity=round(similarity, 4),
                severity=conflict.severity.value,
            )
            if self._events is not None:
                self._events.emit("conflict.detected", conflict.as_dict())
        return conflicts

    @staticmethod
    def explain(first: EnsembleVote, second: EnsembleVote) -> str:
        return (
            f'{first.agent_id} suggests "{first.answer[:_EXCERPT_LENGTH]}..." while '
            f'{second.agent_id} suggests "{second.answer[:_EXCERPT_LENGTH]}...". '
            "Their approaches appear to differ fundamentally."
        )


__all__ = ["Conflict", "ConflictDetector", "EnsembleVote", "jaccard_similarity"]
