from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence
from uuid import uuid4

from ..core.config import CollaborationSettings
from ..core.logging import get_logger
from ..core.metrics import increment_collaboration
from .events import EventBus
from .storage import JsonFileStore

logger = get_logger(name=__name__)

Trend = Literal["improving", "stable", "declining"]

_TREND_WINDOW = 5
_TREND_MIN_SAMPLES = 3
_TREND_MARGIN = 0.1
_RECENCY_HORIZON_DAYS = 30.0
_MAX_RECENCY_BONUS = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CollaborationRecord:
    requester_id: str
    requester_name: str
    helper_id: str
    helper_name: str
    required_skills: tuple[str, ...]
    task_description: str
    outcome: str
    success: bool
    duration_seconds: float
    depth: int = 0
    record_id: str = field(default_factory=lambda: f"collab_{uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "requester_id": self.requester_id,
            "requester_name": self.requester_name,
            "helper_id": self.helper_id,
            "helper_name": self.helper_name,
            "required_skills": list(self.required_skills),
            "task_description": self.task_description,
            "outcome": self.outcome,
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "depth": self.depth,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CollaborationRecord":
        timestamp = datetime.fromisoformat(str(data["timestamp"]))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            record_id=str(data["id"]),
            timestamp=timestamp,
            requester_id=str(data["requester_id"]),
            requester_name=str(data.get("requester_name", "")),
            helper_id=str(data["helper_id"]),
            helper_name=str(data.get("helper_name", "")),
            required_skills=tuple(data.get("required_skills") or ()),
            task_description=str(data.get("task_description", "")),
            outcome=str(data.get("outcome", "")),
            success=bool(data.get("success")),
            duration_seconds=float(data.get("duration_seconds") or 0.0),
            depth=int(data.get("depth") or 0),
        )


@dataclass(slots=True)
class PairMetrics:
    requester_id: str
    requester_name: str
    helper_id: str
    helper_name: str
    total_collaborations: int
    successful_collaborations: int
    success_rate: float
    average_duration: float
    skill_match_score: float
    last_collaboration: datetime
    trend: Trend

    def as_dict(self) -> dict[str, object]:
        return {
            "requester_id": self.requester_id,
            "requester_name": self.requester_name,
            "helper_id": self.helper_id,
            "helper_name": self.helper_name,
            "total_collaborations": self.total_collaborations,
            "successful_collaborations": self.successful_collaborations,
            "success_rate": round(self.success_rate, 2),
            "average_duration": round(self.average_duration, 4),
            "skill_match_score": round(self.skill_match_score, 2),
            "last_collaboration": self.last_collaboration.isoformat(),
            "trend": self.trend,
        }


def _success_ratio(records: Sequence[CollaborationRecord]) -> float:
    if not records:
        return 0.0
    return sum(1 for record in records if record.success) / len(records)


def compute_trend(records: Sequence[CollaborationRecord]) -> Trend:
    recent = records[-_TREND_WINDOW:]
    older = records[:-_TREND_WINDOW]
    if len(recent) < _TREND_MIN_SAMPLES or len(older) < _TREND_MIN_SAMPLES:
        return "stable"
    recent_rate = _success_ratio(recent)
    older_rate = _success_ratio(older)
    if recent_rate > older_rate + _TREND_MARGIN:
        return "improving"
    if recent_rate < older_rate - _TREND_MARGIN:
        return "declining"
    return "stable"


class CollaborationHistory:
    """Bounded log of agent-to-agent help requests, persisted as one JSON file."""

    def __init__(
        self,
        data_dir: Path | str,
        *,
        settings: CollaborationSettings | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or CollaborationSettings()
        self._store = JsonFileStore(Path(data_dir) / self._settings.history_file)
        self._events = events
        self._clock = clock or _utcnow
        self._records: list[CollaborationRecord] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> int:
        raw = await self._store.load(default=[])
        records: list[CollaborationRecord] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                records.append(CollaborationRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("collaboration_record_invalid", error=str(exc))
        self._records = records[-self._settings.max_records :]
        logger.info("collaboration_history_loaded", records=len(self._records))
        return len(self._records)

    async def record(self, record: CollaborationRecord) -> CollaborationRecord:
        async with self._lock:
            self._records.append(record)
            if len(self._records) > self._settings.max_records:
                del self._records[: len(self._records) - self._settings.max_records]
            await self._persist()
        increment_collaboration(success=record.success)
        logger.info(
            "collaboration_recorded",
            requester=record.requester_id,
            helper=record.helper_id,
            success=record.success,
        )
        if self._events is not None:
            self._events.emit("collaboration.recorded", record.to_dict())
        return record

    def get_all(self) -> list[CollaborationRecord]:
        return list(self._records)

    def get_recent(self, limit: int = 50) -> list[CollaborationRecord]:
        if limit <= 0:
            return []
        return list(reversed(self._records[-limit:]))

    def get_agent_records(self, agent_id: str) -> list[CollaborationRecord]:
        return [
            record
            for record in self._records
            if record.requester_id == agent_id or record.helper_id == agent_id
        ]

    def get_pair_records(self, requester_id: str, helper_id: str) -> list[CollaborationRecord]:
        return [
            record
            for record in self._records
            if record.requester_id == requester_id and record.helper_id == helper_id
        ]

    def get_pair_metrics(self, requester_id: str, helper_id: str) -> PairMetrics | None:
        records = self.get_pair_records(requester_id, helper_id)
        if not records:
            return None
        successful = sum(1 for record in records if record.success)
        success_rate = successful / len(records) * 100
        return PairMetrics(
            requester_id=requester_id,
            requester_name=records[0].requester_name,
            helper_id=helper_id,
            helper_name=records[0].helper_name,
            total_collaborations=len(records),
            successful_collaborations=successful,
            success_rate=success_rate,
            average_duration=sum(record.duration_seconds for record in records) / len(records),
            skill_match_score=success_rate,
            last_collaboration=records[-1].timestamp,
            trend=compute_trend(records),
        )

    def get_all_pair_metrics(self) -> list[PairMetrics]:
        seen: dict[tuple[str, str], PairMetrics] = {}
        for record in self._records:
            key = (record.requester_id, record.helper_id)
            if key in seen:
                continue
            metrics = self.get_pair_metrics(*key)
            if metrics is not None:
                seen[key] = metrics
        return list(seen.values())

    def find_best_helper(self, requester_id: str, candidate_ids: Iterable[str]) -> str | None:
        """Pick the candidate with the best track record for this requester.

        Score is success rate scaled by up to 50% for a recent collaboration,
        fading linearly to nothing over thirty days. Candidates without any
        shared history are not scored.
        """
        now = self._clock()
        best_helper: str | None = None
        best_score = -1.0
        for helper_id in candidate_ids:
            metrics = self.get_pair_metrics(requester_id, helper_id)
            if metrics is None:
                continue
            age_days = max((now - metrics.last_collaboration).total_seconds(), 0.0) / 86_400
            recency_bonus = _MAX_RECENCY_BONUS * max(0.0, 1.0 - age_days / _RECENCY_HORIZON_DAYS)
            score = metrics.success_rate * (1 + recency_bonus)
            if score > best_score:
                best_score = score
                best_helper = helper_id
        return best_helper

    async def clear(self) -> None:
        async with self._lock:
            self._records = []
            await self._persist()
        logger.info("collaboration_history_cleared")

    async def _persist(self) -> None:
        await self._store.save([record.to_dict() for record in self._records])


__all__ = ["CollaborationHistory", "CollaborationRecord", "PairMetrics", "compute_trend"]
