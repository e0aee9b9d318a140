from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import SchedulingSettings
from ..core.exceptions import NotFoundError, TaskDependencyError, ToolExecutionError
from ..core.logging import get_logger
from .enums import TaskStatus
from .state import Task

logger = get_logger(name=__name__)

_FAILED_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    success: bool
    result: Any = None
    error: str | None = None
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class DispatchReport:
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [task_id for task_id, outcome in self.outcomes.items() if outcome.success]

    @property
    def failed(self) -> list[str]:
        return [task_id for task_id, outcome in self.outcomes.items() if not outcome.success]

    @property
    def all_succeeded(self) -> bool:
        return all(outcome.success for outcome in self.outcomes.values())

    def as_dict(self) -> dict[str, Any]:
        return {task_id: outcome.as_dict() for task_id, outcome in self.outcomes.items()}


TaskRunner = Callable[[Task], Awaitable[TaskOutcome]]
DispatchEvent = Callable[[str, Task, dict[str, object]], Awaitable[None]]


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    backoff_multiplier: float
    max_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: SchedulingSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.default_retry_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def retrying(self) -> AsyncRetrying:
        """Tenacity loop for executor calls. Not-found lookups and failed tool calls are never retried."""
        attempts = self.max_attempts if self.max_attempts > 0 else 1
        wait_kwargs: dict[str, float] = {
            "multiplier": self.base_backoff_seconds,
            "exp_base": max(1.5, self.backoff_multiplier),
        }
        if self.max_backoff_seconds > 0:
            wait_kwargs["max"] = self.max_backoff_seconds
        wait_strategy = wait_random_exponential(**wait_kwargs)
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_strategy,
            retry=retry_if_not_exception_type((NotFoundError, ToolExecutionError)),
            reraise=True,
        )


def dependencies_met(task: Task, tasks: Mapping[str, Task]) -> bool:
    for dependency_id in task.dependencies:
        dependency = tasks.get(dependency_id)
        if dependency is None or dependency.status is not TaskStatus.COMPLETED:
            return False
    return True


def failed_dependency(task: Task, tasks: Mapping[str, Task]) -> str | None:
    """Return the first dependency that can no longer complete, if any."""
    for dependency_id in task.dependencies:
        dependency = tasks.get(dependency_id)
        if dependency is None or dependency.status in _FAILED_STATUSES:
            return dependency_id
    return None


def ready_tasks(tasks: Mapping[str, Task]) -> list[Task]:
    """Pending tasks whose dependencies completed, most urgent and oldest first."""
    ready = [
        task
        for task in tasks.values()
        if task.status is TaskStatus.PENDING and dependencies_met(task, tasks)
    ]
    return sorted(ready, key=lambda task: (-task.priority.rank, task.created_at))


class TaskScheduler:
    """Dependency-aware fan-out over a set of sibling tasks.

    Each task waits for its in-set dependencies, then runs under a shared
    concurrency limit. A failure never cancels siblings; dependents of a
    failed task are reported as skipped failures without running.
    """

    def __init__(self, settings: SchedulingSettings | None = None) -> None:
        self._settings = settings or SchedulingSettings()
        self._retry_policy = RetryPolicy.from_settings(self._settings)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def dispatch(
        self,
        tasks: Sequence[Task],
        runner: TaskRunner,
        *,
        known: Mapping[str, Task] | None = None,
        on_event: DispatchEvent | None = None,
    ) -> DispatchReport:
        members = {task.id: task for task in tasks}
        known = known or {}
        self._check_acyclic(members.values())

        report = DispatchReport()
        pending: dict[str, asyncio.Task[TaskOutcome]] = {}
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_tasks)

        async def emit(event: str, task: Task, details: dict[str, object]) -> None:
            if on_event is None:
                return
            try:
                await on_event(event, task, details)
            except Exception as exc:
                logger.warning("dispatch_event_failed", dispatch_event=event, task_id=task.id, error=str(exc))

        async def run(task: Task) -> TaskOutcome:
            blocker = await self._wait_for_dependencies(task, pending, known)
            if blocker is not None:
                outcome = TaskOutcome(
                    task_id=task.id,
                    success=False,
                    error=f"Dependency {blocker} did not complete",
                    skipped=True,
                )
                await emit("skipped", task, {"dependency": blocker})
                return outcome
            async with semaphore:
                await emit("started", task, {})
                try:
                    outcome = await runner(task)
                except Exception as exc:
                    logger.warning("dispatch_task_failed", task_id=task.id, error=str(exc))
                    outcome = TaskOutcome(task_id=task.id, success=False, error=str(exc))
            await emit("completed" if outcome.success else "failed", task, {"error": outcome.error})
            return outcome

        for task in members.values():
            pending[task.id] = asyncio.create_task(run(task))

        results = await asyncio.gather(*pending.values(), return_exceptions=True)
        for task_id, result in zip(pending, results):
            if isinstance(result, BaseException):
                report.outcomes[task_id] = TaskOutcome(task_id=task_id, success=False, error=str(result))
            else:
                report.outcomes[task_id] = result
        logger.info(
            "dispatch_finished",
            tasks=len(members),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    @staticmethod
    async def _wait_for_dependencies(
        task: Task,
        pending: Mapping[str, asyncio.Task[TaskOutcome]],
        known: Mapping[str, Task],
    ) -> str | None:
        for dependency_id in task.dependencies:
            sibling = pending.get(dependency_id)
            if sibling is not None:
                outcome = await asyncio.shield(sibling)
                if not outcome.success:
                    return dependency_id
                continue
            dependency = known.get(dependency_id)
            if dependency is None or dependency.status is not TaskStatus.COMPLETED:
                return dependency_id
        return None

    @staticmethod
    def _check_acyclic(tasks: Iterable[Task]) -> None:
        tasks = list(tasks)
        members = {task.id for task in tasks}
        graph = {task.id: [dep for dep in task.dependencies if dep in members] for task in tasks}
        try:
            TopologicalSorter(graph).prepare()
        except CycleError as exc:
            raise TaskDependencyError(f"Dependency cycle between tasks: {exc.args[1]}") from exc


__all__ = [
    "DispatchReport",
    "RetryPolicy",
    "TaskOutcome",
    "TaskScheduler",
    "dependencies_met",
    "failed_dependency",
    "ready_tasks",
]
