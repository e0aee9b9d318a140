from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from ..core.exceptions import GoalNotFoundError
from ..core.logging import get_logger
from ..services.events import EventBus
from ..services.storage import JsonFileStore
from .enums import GoalStatus, SubtaskStatus

logger = get_logger(name=__name__)

GOALS_FILE = "goals.json"
DEFAULT_SUBTASK_PRIORITY = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class Subtask:
    description: str
    priority: int = DEFAULT_SUBTASK_PRIORITY
    dependencies: list[str] = field(default_factory=list)
    status: SubtaskStatus = SubtaskStatus.PENDING
    subtask_id: str = field(default_factory=lambda: f"subtask_{uuid4().hex[:10]}")

    def __post_init__(self) -> None:
        if not 1 <= self.priority <= 5:
            raise ValueError(f"Subtask priority must be between 1 and 5, got {self.priority}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.subtask_id,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Subtask":
        return cls(
            subtask_id=str(data["id"]),
            description=str(data["description"]),
            priority=int(data.get("priority") or DEFAULT_SUBTASK_PRIORITY),
            dependencies=[str(item) for item in data.get("dependencies") or []],
            status=SubtaskStatus(data.get("status", SubtaskStatus.PENDING.value)),
        )


@dataclass(slots=True)
class Goal:
    description: str
    goal_id: str = field(default_factory=lambda: f"goal_{uuid4().hex[:10]}")
    subtasks: list[Subtask] = field(default_factory=list)
    status: GoalStatus = GoalStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def subtask(self, subtask_id: str) -> Subtask | None:
        return next((item for item in self.subtasks if item.subtask_id == subtask_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.goal_id,
            "description": self.description,
            "subtasks": [item.to_dict() for item in self.subtasks],
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Goal":
        return cls(
            goal_id=str(data["id"]),
            description=str(data["description"]),
            subtasks=[Subtask.from_dict(item) for item in data.get("subtasks") or []],
            status=GoalStatus(data.get("status", GoalStatus.ACTIVE.value)),
            created_at=_parse_timestamp(data["created_at"]),
            updated_at=_parse_timestamp(data["updated_at"]),
        )


class GoalManager:
    """Long-running objectives broken into prioritized subtasks."""

    def __init__(
        self,
        data_dir: Path | str,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = JsonFileStore(Path(data_dir) / GOALS_FILE)
        self._events = events
        self._clock = clock or _utcnow
        self._goals: dict[str, Goal] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> int:
        raw = await self._store.load(default=[])
        for item in raw if isinstance(raw, list) else []:
            try:
                goal = Goal.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("goal_record_invalid", error=str(exc))
                continue
            self._goals[goal.goal_id] = goal
        logger.info("goals_loaded", goals=len(self._goals))
        return len(self._goals)

    async def create_goal(self, description: str) -> Goal:
        now = self._clock()
        goal = Goal(description=description, created_at=now, updated_at=now)
        async with self._lock:
            self._goals[goal.goal_id] = goal
            await self._persist()
        self._notify(goal)
        return goal

    async def add_subtasks(self, goal_id: str, subtasks: Iterable[Mapping[str, Any]]) -> Goal:
        goal = self.get(goal_id)
        created = [
            Subtask(
                description=str(item["description"]),
                priority=int(item.get("priority") or DEFAULT_SUBTASK_PRIORITY),
                dependencies=[str(dep) for dep in item.get("dependencies") or []],
            )
            for item in subtasks
        ]
        async with self._lock:
            goal.subtasks.extend(created)
            goal.updated_at = self._clock()
            await self._persist()
        self._notify(goal)
        return goal

    async def update_task_status(self, goal_id: str, subtask_id: str, status: SubtaskStatus | str) -> Goal:
        goal = self.get(goal_id)
        subtask = goal.subtask(subtask_id)
        if subtask is None:
            raise GoalNotFoundError(f"{goal_id}/{subtask_id}")
        async with self._lock:
            subtask.status = SubtaskStatus(status)
            goal.updated_at = self._clock()
            if goal.subtasks and all(item.status is SubtaskStatus.COMPLETED for item in goal.subtasks):
                goal.status = GoalStatus.COMPLETED
            await self._persist()
        self._notify(goal)
        return goal

    def get(self, goal_id: str) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise GoalNotFoundError(goal_id)
        return goal

    def get_active_goal(self) -> Goal | None:
        active = [goal for goal in self._goals.values() if goal.status is GoalStatus.ACTIVE]
        if not active:
            return None
        return max(active, key=lambda goal: goal.updated_at)

    def list_goals(self) -> list[Goal]:
        return list(self._goals.values())

    def _notify(self, goal: Goal) -> None:
        logger.info("goal_updated", goal_id=goal.goal_id, status=goal.status.value, subtasks=len(goal.subtasks))
        if self._events is not None:
            self._events.emit("goal.updated", goal.to_dict())

    async def _persist(self) -> None:
        await self._store.save([goal.to_dict() for goal in self._goals.values()])


__all__ = ["Goal", "GoalManager", "Subtask"]
