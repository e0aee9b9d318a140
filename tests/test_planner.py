from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from synergy.orchestration.enums import TaskPriority
from synergy.orchestration.planner import (
    FALLBACK_PROJECT_NAME,
    ObjectivePlanner,
    ProjectPlan,
    extract_json_object,
    fallback_plan,
)
from tests.helpers.stubs import StubAgentExecutor

PLAN = {
    "projectName": "Market Study",
    "plan": "Research then write up",
    "tasks": [
        {"id": "t1", "title": "Collect data", "requiredSkills": "research", "priority": "HIGH"},
        {"id": "t2", "title": "Write report", "dependencies": ["t1"], "department": "writing"},
    ],
}


@pytest.mark.asyncio
async def test_valid_plan_wrapped_in_prose_is_parsed() -> None:
    executor = StubAgentExecutor(default=f"Here is the plan:\n{json.dumps(PLAN)}\nGood luck!")

    outcome = await ObjectivePlanner(executor).plan("Study the market")

    assert not outcome.fallback
    assert outcome.plan.project_name == "Market Study"
    first, second = outcome.plan.tasks
    assert first.required_skills == ["research"]
    assert first.priority is TaskPriority.HIGH
    assert second.dependencies == ["t1"]
    assert executor.calls[0][2].data == {"mode": "planning"}


@pytest.mark.asyncio
async def test_prose_reply_falls_back_to_single_task() -> None:
    outcome = await ObjectivePlanner(StubAgentExecutor(default="I cannot plan this.")).plan("Cure boredom")

    assert outcome.fallback
    assert outcome.error
    assert outcome.plan.project_name == FALLBACK_PROJECT_NAME
    [task] = outcome.plan.tasks
    assert task.description == "Cure boredom"
    assert task.required_skills == ["research", "analysis"]


@pytest.mark.asyncio
async def test_executor_failure_falls_back() -> None:
    async def broken(system_prompt, message, context):
        raise RuntimeError("provider offline")

    outcome = await ObjectivePlanner(StubAgentExecutor(broken)).plan("Anything")

    assert outcome.fallback
    assert outcome.error == "provider offline"


@pytest.mark.parametrize(
    "tasks",
    [
        [],
        [{"id": "a", "title": "A"}, {"id": "a", "title": "Again"}],
        [{"id": "a", "title": "A", "dependencies": ["ghost"]}],
        [{"id": "a", "title": "A", "dependencies": ["a"]}],
        [
            {"id": "a", "title": "A", "dependencies": ["b"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
        ],
    ],
)
def test_plan_validation_rejects_broken_graphs(tasks) -> None:
    with pytest.raises(ValidationError):
        ProjectPlan.model_validate({"projectName": "x", "tasks": tasks})


def test_dependency_order_puts_prerequisites_first_and_keeps_plan_order() -> None:
    plan = ProjectPlan.model_validate(
        {
            "projectName": "Release",
            "tasks": [
                {"id": "ship", "title": "Ship", "dependencies": ["build", "docs"]},
                {"id": "docs", "title": "Docs"},
                {"id": "build", "title": "Build", "dependencies": ["docs"]},
                {"id": "notes", "title": "Notes"},
            ],
        }
    )

    assert [task.id for task in plan.in_dependency_order()] == ["docs", "notes", "build", "ship"]


def test_helpers() -> None:
    assert extract_json_object('noise {"a": 1} trailing') == '{"a": 1}'
    assert extract_json_object("no json") == "no json"
    assert fallback_plan("x" * 40).tasks[0].title == f"Objective: {'x' * 30}..."
