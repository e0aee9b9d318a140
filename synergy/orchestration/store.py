from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.logging import get_logger
from ..services.storage import JsonFileStore
from .state import OrgAgent, Project, Task

logger = get_logger(name=__name__)

AGENTS_FILE = "agents.json"
TASKS_FILE = "tasks.json"
PROJECTS_FILE = "projects.json"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(slots=True)
class OrgSnapshot:
    agents: list[OrgAgent] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)


class OrgStateStore:
    """Agents, tasks and projects, each kept in its own JSON file under ``data_dir``."""

    def __init__(self, data_dir: Path | str) -> None:
        directory = Path(data_dir)
        self._agents = JsonFileStore(directory / AGENTS_FILE)
        self._tasks = JsonFileStore(directory / TASKS_FILE)
        self._projects = JsonFileStore(directory / PROJECTS_FILE)
        self._lock = asyncio.Lock()

    async def load(self) -> OrgSnapshot:
        return OrgSnapshot(
            agents=await self._load_models(self._agents, OrgAgent),
            tasks=await self._load_models(self._tasks, Task),
            projects=await self._load_models(self._projects, Project),
        )

    async def save(
        self,
        *,
        agents: Iterable[OrgAgent],
        tasks: Iterable[Task],
        projects: Iterable[Project],
    ) -> bool:
        payloads = (
            [agent.model_dump(mode="json") for agent in agents],
            [task.model_dump(mode="json") for task in tasks],
            [project.model_dump(mode="json") for project in projects],
        )
        async with self._lock:
            results = [
                await self._agents.save(payloads[0]),
                await self._tasks.save(payloads[1]),
                await self._projects.save(payloads[2]),
            ]
        return all(results)

    @staticmethod
    async def _load_models(store: JsonFileStore, model: type[ModelT]) -> list[ModelT]:
        raw: Any = await store.load(default=[])
        items: list[ModelT] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                items.append(model.model_validate(item))
            except ValidationError as exc:
                logger.warning("org_state_record_invalid", path=str(store.path), error=str(exc))
        return items


__all__ = ["OrgSnapshot", "OrgStateStore"]
