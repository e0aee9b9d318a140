from __future__ import annotations


class SynergyError(RuntimeError):
    """Base class for orchestration core failures."""


class NotFoundError(SynergyError, LookupError):
    """Raised when a referenced entity does not exist."""


class AgentNotFoundError(NotFoundError):
    """Raised when an agent id cannot be resolved."""


class TaskNotFoundError(NotFoundError):
    """Raised when a task id cannot be resolved."""


class ProjectNotFoundError(NotFoundError):
    """Raised when a project id cannot be resolved."""


class DecisionNotFoundError(NotFoundError):
    """Raised when a decision id cannot be resolved."""


class GoalNotFoundError(NotFoundError):
    """Raised when a goal or one of its subtasks cannot be resolved."""


class RollbackEntryNotFoundError(NotFoundError):
    """Raised when a rollback entry id cannot be resolved."""


class DiffNotFoundError(NotFoundError):
    """Raised when a pending diff id cannot be resolved."""


class InvalidTransitionError(SynergyError):
    """Raised when a task is moved to a status its current status does not allow."""


class TaskDependencyError(SynergyError):
    """Raised when a task would start before all of its dependencies completed."""


class DecisionAlreadyResolvedError(SynergyError):
    """Raised when a verdict arrives for a decision that is no longer pending."""


class StorageError(SynergyError):
    """Raised when a persistent store cannot be initialized."""


class RollbackError(SynergyError):
    """Base class for backup and restore failures."""


class RollbackNotEligibleError(RollbackError):
    """Raised when an entry was already rolled back or cannot be restored."""


class BackupTooLargeError(RollbackError):
    """Raised when a file exceeds the per-backup size cap."""


class PolicyViolationError(SynergyError):
    """Raised when an enforced permission check denies an action."""

    def __init__(self, reason: str, *, role: str, action: str, resource: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.role = role
        self.action = action
        self.resource = resource


class AgentLimitError(SynergyError):
    """Raised when the organization is already at its agent capacity."""


class TerminationRefusedError(SynergyError):
    """Raised when an agent may not be terminated."""


class ExecutorError(SynergyError):
    """Raised when the agent or tool executor fails on behalf of a task."""


class ToolExecutionError(ExecutorError):
    """Raised when a tool call fails. The agent turn that issued it is not replayed."""
