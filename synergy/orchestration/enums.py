from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"critical": 4, "high": 3, "medium": 2, "low": 1}[self.value]


class AgentStatus(str, Enum):
    ACTIVE = "active"
    BUSY = "busy"
    IDLE = "idle"
    OFFLINE = "offline"


class AgentLevel(str, Enum):
    CEO = "ceo"
    EXECUTIVE = "executive"
    MANAGER = "manager"
    SENIOR = "senior"
    JUNIOR = "junior"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    FAILED = "failed"


class DecisionType(str, Enum):
    HIRE = "hire"
    FIRE = "fire"
    BUDGET = "budget"
    STRATEGIC = "strategic"
    SECURITY = "security"
    EMERGENCY = "emergency"
    VAULT_ACCESS = "vault_access"


class DecisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class PolicyAction(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    DELETE = "delete"
    NETWORK = "network"


class ResourceType(str, Enum):
    FILE = "file"
    MEMORY = "memory"
    SETTINGS = "settings"
    SYSTEM = "system"
    WEB = "web"


class PolicyDecisionType(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class RollbackAction(str, Enum):
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SubtaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FindingSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


__all__ = [
    "AgentLevel",
    "AgentStatus",
    "ConflictSeverity",
    "DecisionStatus",
    "DecisionType",
    "FindingSeverity",
    "GoalStatus",
    "PolicyAction",
    "PolicyDecisionType",
    "ProjectStatus",
    "ResourceType",
    "RollbackAction",
    "SubtaskStatus",
    "TaskPriority",
    "TaskStatus",
]
