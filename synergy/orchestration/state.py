from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..core.exceptions import InvalidTransitionError
from .enums import AgentLevel, AgentStatus, ProjectStatus, TaskPriority, TaskStatus

CONVERSATION_WINDOW = 10

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.REVIEW, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.REVIEW: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class ConversationTurn(BaseModel):
    user_message: str
    agent_response: str
    timestamp: datetime = Field(default_factory=_utcnow)


class Task(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("task"))
    title: str = Field(min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: str | None = None
    assigned_by: str | None = None
    department: str | None = None
    required_skills: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    project_id: str | None = None
    parent_id: str | None = None
    tools_used: list[str] = Field(default_factory=list)
    approval_required: bool = False
    result: Any = None
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("required_skills", "dependencies")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        return list(dict.fromkeys(value for value in values if value))

    def transition(self, status: TaskStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Task {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status


class OrgAgent(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("agent"))
    name: str = Field(min_length=1)
    role: str = Field(min_length=1)
    department: str = "general"
    level: AgentLevel = AgentLevel.JUNIOR
    status: AgentStatus = AgentStatus.IDLE
    skills: list[str] = Field(default_factory=list)
    system_prompt: str = ""
    manager_id: str | None = None
    direct_reports: list[str] = Field(default_factory=list)
    current_task: str | None = None
    tasks_completed: int = Field(0, ge=0)
    success_rate: float = Field(100.0, ge=0.0, le=100.0)
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    def remember(self, user_message: str, agent_response: str) -> None:
        self.conversation_history.append(
            ConversationTurn(user_message=user_message, agent_response=agent_response)
        )
        if len(self.conversation_history) > CONVERSATION_WINDOW:
            del self.conversation_history[: len(self.conversation_history) - CONVERSATION_WINDOW]

    def record_outcome(self, success: bool) -> None:
        self.tasks_completed += 1
        count = self.tasks_completed
        self.success_rate = (self.success_rate * (count - 1) + (100.0 if success else 0.0)) / count


class Project(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("project"))
    name: str = Field(min_length=1)
    objective: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    intelligence: list[str] = Field(default_factory=list)
    shared_state: dict[str, Any] = Field(default_factory=dict)
    tasks: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CONVERSATION_WINDOW",
    "ConversationTurn",
    "OrgAgent",
    "Project",
    "Task",
]
