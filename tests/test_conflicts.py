from __future__ import annotations

import pytest

from synergy.orchestration.enums import ConflictSeverity
from synergy.services.disputes import ConflictDetector, EnsembleVote, jaccard_similarity
from synergy.services.events import Event, EventBus


def test_jaccard_similarity() -> None:
    assert jaccard_similarity("use react", "use vue") == pytest.approx(1 / 3)
    assert jaccard_similarity("", "") == 1.0
    assert jaccard_similarity("Same Words", "same words") == 1.0


def test_dissimilar_answers_with_mixed_confidence_are_medium() -> None:
    detector = ConflictDetector()
    votes = [
        EnsembleVote(agent_id="a1", answer="Use React", confidence=0.6),
        EnsembleVote(agent_id="a2", answer="Use Vue", confidence=0.7),
    ]

    [conflict] = detector.detect("Pick a frontend framework", votes)

    assert conflict.severity is ConflictSeverity.MEDIUM
    assert conflict.agents == ("a1", "a2")
    assert conflict.explanation == (
        'a1 suggests "Use React..." while a2 suggests "Use Vue...". '
        "Their approaches appear to differ fundamentally."
    )


@pytest.mark.parametrize(
    ("first", "second", "expected"),
    [
        (0.3, 0.4, ConflictSeverity.LOW),
        (0.9, 0.95, ConflictSeverity.HIGH),
        (0.9, 0.4, ConflictSeverity.MEDIUM),
    ],
)
def test_severity_bands(first, second, expected) -> None:
    detector = ConflictDetector()

    severity = detector.classify_severity(
        EnsembleVote(agent_id="a", answer="x", confidence=first),
        EnsembleVote(agent_id="b", answer="y", confidence=second),
    )

    assert severity is expected


@pytest.mark.asyncio
async def test_similar_answers_and_single_votes_do_not_conflict() -> None:
    bus = EventBus()
    seen: list[Event] = []

    async def on_conflict(event: Event) -> None:
        seen.append(event)

    bus.subscribe(on_conflict, topics=["conflict.detected"])
    detector = ConflictDetector(events=bus)

    agreeing = detector.detect(
        "q",
        [
            EnsembleVote(agent_id="a", answer="ship it today", confidence=0.9),
            EnsembleVote(agent_id="b", answer="ship it today please", confidence=0.9),
        ],
    )
    lonely = detector.detect("q", [EnsembleVote(agent_id="a", answer="yes", confidence=0.9)])
    await bus.drain()

    assert agreeing == []
    assert lonely == []
    assert seen == []
