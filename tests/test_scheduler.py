from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from synergy.core.config import SchedulingSettings
from synergy.core.exceptions import TaskDependencyError, TaskNotFoundError, ToolExecutionError
from synergy.orchestration.enums import TaskPriority, TaskStatus
from synergy.orchestration.scheduler import (
    RetryPolicy,
    TaskOutcome,
    TaskScheduler,
    dependencies_met,
    failed_dependency,
    ready_tasks,
)
from synergy.orchestration.state import Task


def _task(title: str, *deps: str, **fields) -> Task:
    return Task(title=title, dependencies=list(deps), **fields)


@pytest.mark.asyncio
async def test_dependents_wait_and_failures_skip_only_downstream() -> None:
    research = _task("research")
    broken = _task("broken")
    report = _task("report", research.id)
    orphan = _task("orphan", broken.id)
    order: list[str] = []

    async def runner(task: Task) -> TaskOutcome:
        order.append(task.title)
        if task.title == "broken":
            raise RuntimeError("agent crashed")
        return TaskOutcome(task_id=task.id, success=True, result=task.title)

    result = await TaskScheduler().dispatch([report, orphan, research, broken], runner)

    assert order.index("research") < order.index("report")
    assert "orphan" not in order
    assert result.outcomes[research.id].success
    assert result.outcomes[report.id].success
    assert result.outcomes[broken.id].error == "agent crashed"
    assert result.outcomes[orphan.id].skipped
    assert set(result.failed) == {broken.id, orphan.id}
    assert not result.all_succeeded


@pytest.mark.asyncio
async def test_external_dependencies_must_already_be_completed() -> None:
    done = _task("done", status=TaskStatus.COMPLETED)
    waiting = _task("waiting", status=TaskStatus.IN_PROGRESS)
    ok = _task("ok", done.id)
    blocked = _task("blocked", waiting.id)

    async def runner(task: Task) -> TaskOutcome:
        return TaskOutcome(task_id=task.id, success=True)

    result = await TaskScheduler().dispatch([ok, blocked], runner, known={done.id: done, waiting.id: waiting})

    assert result.outcomes[ok.id].success
    assert result.outcomes[blocked.id].error == f"Dependency {waiting.id} did not complete"


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected() -> None:
    running = 0
    peak = 0

    async def runner(task: Task) -> TaskOutcome:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return TaskOutcome(task_id=task.id, success=True)

    scheduler = TaskScheduler(SchedulingSettings(max_concurrent_tasks=2))
    result = await scheduler.dispatch([_task(f"t{index}") for index in range(6)], runner)

    assert peak == 2
    assert result.all_succeeded


@pytest.mark.asyncio
async def test_cycles_are_rejected_before_anything_runs() -> None:
    first = _task("first")
    second = _task("second", first.id)
    first.dependencies = [second.id]

    async def runner(task: Task) -> TaskOutcome:  # pragma: no cover - never reached
        raise AssertionError("should not run")

    with pytest.raises(TaskDependencyError):
        await TaskScheduler().dispatch([first, second], runner)


@pytest.mark.asyncio
async def test_event_hook_failures_are_contained() -> None:
    events: list[str] = []

    async def on_event(name: str, task: Task, details: dict) -> None:
        events.append(name)
        raise RuntimeError("observer broke")

    async def runner(task: Task) -> TaskOutcome:
        return TaskOutcome(task_id=task.id, success=True)

    result = await TaskScheduler().dispatch([_task("solo")], runner, on_event=on_event)

    assert result.all_succeeded
    assert events == ["started", "completed"]


def test_ready_tasks_orders_by_priority_then_age() -> None:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old_low = _task("old-low", priority=TaskPriority.LOW, created_at=now)
    new_high = _task("new-high", priority=TaskPriority.HIGH, created_at=now + timedelta(minutes=5))
    old_high = _task("old-high", priority=TaskPriority.HIGH, created_at=now)
    gated = _task("gated", old_low.id, priority=TaskPriority.CRITICAL)
    tasks = {task.id: task for task in (old_low, new_high, old_high, gated)}

    assert [task.title for task in ready_tasks(tasks)] == ["old-high", "new-high", "old-low"]
    assert not dependencies_met(gated, tasks)
    assert failed_dependency(gated, tasks) is None

    old_low.status = TaskStatus.FAILED
    assert failed_dependency(gated, tasks) == old_low.id


@pytest.mark.asyncio
async def test_retry_policy_retries_transient_errors_but_not_lookups_or_tools() -> None:
    policy = RetryPolicy(max_attempts=3, base_backoff_seconds=0.0, backoff_multiplier=2.0, max_backoff_seconds=0.0)
    calls = {"flaky": 0, "missing": 0, "tool": 0}

    async def flaky() -> str:
        calls["flaky"] += 1
        if calls["flaky"] < 3:
            raise ConnectionError("reset")
        return "ok"

    async def missing() -> str:
        calls["missing"] += 1
        raise TaskNotFoundError("task_x")

    async def broken_tool() -> str:
        calls["tool"] += 1
        raise ToolExecutionError("Tool execute_command failed: exit 1")

    async for attempt in policy.retrying():
        with attempt:
            value = await flaky()
    with pytest.raises(TaskNotFoundError):
        async for attempt in policy.retrying():
            with attempt:
                await missing()
    with pytest.raises(ToolExecutionError):
        async for attempt in policy.retrying():
            with attempt:
                await broken_tool()

    assert value == "ok"
    assert calls == {"flaky": 3, "missing": 1, "tool": 1}
