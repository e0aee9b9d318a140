from __future__ import annotations

import json
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.logging import get_logger
from .enums import TaskPriority
from .executors import AgentExecutor, ExecutionContext, coerce_response

logger = get_logger(name=__name__)

FALLBACK_PROJECT_NAME = "Emergency Rapid Response"

PLANNING_PROMPT = (
    "You are the planning orchestrator of an autonomous organization. Break the objective "
    "into concrete tasks. Reply with JSON only, shaped as "
    '{"projectName": str, "plan": str, "tasks": [{"id": str, "title": str, "description": str, '
    '"department": str, "requiredSkills": [str], "priority": "critical|high|medium|low", '
    '"dependencies": [task ids from this plan]}]}.'
)


class PlannedTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    department: str = Field(default="general")
    required_skills: list[str] = Field(default_factory=list, alias="requiredSkills")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("required_skills", "dependencies", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class ProjectPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(default="", alias="projectName")
    summary: str = Field(default="", alias="plan")
    tasks: list[PlannedTask] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_references(self) -> "ProjectPlan":
        ids = [task.id for task in self.tasks]
        if len(set(ids)) != len(ids):
            raise ValueError("plan task ids must be unique")
        known = set(ids)
        for task in self.tasks:
            unknown = [dep for dep in task.dependencies if dep not in known]
            if unknown:
                raise ValueError(f"task {task.id} depends on unknown tasks {unknown}")
            if task.id in task.dependencies:
                raise ValueError(f"task {task.id} depends on itself")
        try:
            TopologicalSorter({task.id: task.dependencies for task in self.tasks}).prepare()
        except CycleError as exc:
            raise ValueError(f"plan dependencies form a cycle: {exc.args[1]}") from exc
        return self

    def in_dependency_order(self) -> list[PlannedTask]:
        """Tasks in plan order, except that every task follows its dependencies."""
        placed: set[str] = set()
        ordered: list[PlannedTask] = []
        remaining = list(self.tasks)
        while remaining:
            ready = [task for task in remaining if placed.issuperset(task.dependencies)]
            if not ready:
                raise ValueError("plan dependencies form a cycle")
            for task in ready:
                placed.add(task.id)
                ordered.append(task)
            remaining = [task for task in remaining if task.id not in placed]
        return ordered


@dataclass(slots=True)
class PlanOutcome:
    plan: ProjectPlan
    fallback: bool
    error: str | None = None


def extract_json_object(raw: str) -> str:
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        return raw[start : end + 1]
    return raw


def fallback_plan(objective: str) -> ProjectPlan:
    return ProjectPlan(
        project_name=FALLBACK_PROJECT_NAME,
        summary="Direct task allocation due to planning failure.",
        tasks=[
            PlannedTask(
                id="objective",
                title=f"Objective: {objective[:30]}...",
                description=objective,
                department="research",
                required_skills=["research", "analysis"],
                priority=TaskPriority.HIGH,
            )
        ],
    )


class ObjectivePlanner:
    """Asks the agent executor for a task graph and validates what comes back.

    Anything other than a well-formed plan (executor failure, prose, a
    dangling dependency) degrades to a single research task carrying the
    whole objective.
    """

    def __init__(self, executor: AgentExecutor, *, system_prompt: str = PLANNING_PROMPT) -> None:
        self._executor = executor
        self._system_prompt = system_prompt

    async def plan(self, objective: str, context: ExecutionContext | None = None) -> PlanOutcome:
        context = context or ExecutionContext(data={"mode": "planning"})
        try:
            response = coerce_response(await self._executor.execute(self._system_prompt, objective, context))
        except Exception as exc:
            logger.warning("objective_planning_failed", error=str(exc))
            return PlanOutcome(plan=fallback_plan(objective), fallback=True, error=str(exc))
        try:
            payload = json.loads(extract_json_object(response.text))
            plan = ProjectPlan.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("objective_plan_invalid", error=str(exc))
            return PlanOutcome(plan=fallback_plan(objective), fallback=True, error=str(exc))
        logger.info("objective_planned", project=plan.project_name, tasks=len(plan.tasks))
        return PlanOutcome(plan=plan, fallback=False)


__all__ = [
    "ObjectivePlanner",
    "PlanOutcome",
    "PlannedTask",
    "ProjectPlan",
    "extract_json_object",
    "fallback_plan",
]
