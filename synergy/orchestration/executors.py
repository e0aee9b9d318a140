from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from ..core.exceptions import ExecutorError, RollbackError, ToolExecutionError
from ..core.logging import get_logger
from ..services.rollback import RollbackManager
from .enums import RollbackAction
from .policy import PolicyEngine
from .state import OrgAgent, Task

logger = get_logger(name=__name__)

POLICY_VIOLATION_PREFIX = "[POLICY VIOLATION] Action Blocked:"

_BACKED_UP_ACTIONS = {"write": RollbackAction.WRITE, "delete": RollbackAction.DELETE}


@dataclass(slots=True)
class AgentResponse:
    text: str
    confidence: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResult:
    tool: str
    allowed: bool
    output: Any = None
    reason: str | None = None
    rollback_entry: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "tool": self.tool,
            "allowed": self.allowed,
            "output": self.output,
            "reason": self.reason,
            "rollback_entry": self.rollback_entry,
        }


@dataclass(slots=True)
class ExecutionContext:
    agent: OrgAgent | None = None
    task: Task | None = None
    provider: str | None = None
    tools: "ToolSession | None" = None
    data: dict[str, Any] = field(default_factory=dict)


class AgentExecutor:
    """Generates an agent's answer. May call tools through ``context.tools``."""

    async def execute(
        self,
        system_prompt: str,
        user_message: str,
        context: ExecutionContext,
    ) -> str | AgentResponse:
        raise NotImplementedError


class ToolExecutor:
    """Performs a side-effecting tool call such as a file write or shell command."""

    async def execute(self, tool_name: str, args: Mapping[str, Any]) -> Any:
        raise NotImplementedError


def coerce_response(response: str | AgentResponse) -> AgentResponse:
    if isinstance(response, AgentResponse):
        return response
    return AgentResponse(text=str(response))


class PolicyGatedToolExecutor:
    """Runs tool calls only after the policy engine allows them.

    Tools the policy table does not know about run ungated. File writes and
    deletes are snapshotted through the rollback manager first; if the
    snapshot fails the call is refused.
    """

    def __init__(
        self,
        tools: ToolExecutor,
        policy: PolicyEngine,
        *,
        rollback: RollbackManager | None = None,
        on_tool_use: Callable[[str, str], None] | None = None,
    ) -> None:
        self._tools = tools
        self._policy = policy
        self._rollback = rollback
        self._on_tool_use = on_tool_use

    def session(self, agent: OrgAgent, *, task_id: str | None = None) -> "ToolSession":
        return ToolSession(gate=self, agent=agent, task_id=task_id)

    async def execute(
        self,
        tool_name: str,
        args: Mapping[str, Any],
        *,
        agent: OrgAgent,
        task_id: str | None = None,
    ) -> ToolResult:
        target = self._policy.match_tool(tool_name, args)
        rollback_entry: str | None = None
        if target is not None:
            context: dict[str, Any] = {"tool": tool_name}
            if task_id is not None:
                context["taskId"] = task_id
            check = await self._policy.check_permission(
                agent.role,
                target.action,
                target.resource,
                target.resource_id,
                agent_id=agent.id,
                context=context,
            )
            if not check.allowed:
                return ToolResult(
                    tool=tool_name,
                    allowed=False,
                    output=f"{POLICY_VIOLATION_PREFIX} {check.reason}",
                    reason=check.reason,
                )
            backup_action = _BACKED_UP_ACTIONS.get(target.action)
            if self._rollback is not None and backup_action is not None and target.resource == "file" and target.resource_id:
                try:
                    entry = await self._rollback.backup_file(target.resource_id, action=backup_action)
                except RollbackError as exc:
                    logger.warning("tool_backup_failed", tool=tool_name, path=target.resource_id, error=str(exc))
                    return ToolResult(tool=tool_name, allowed=False, output=f"Backup failed: {exc}", reason=str(exc))
                rollback_entry = entry.entry_id

        if self._on_tool_use is not None:
            self._on_tool_use(agent.id, tool_name)
        try:
            output = await self._tools.execute(tool_name, args)
        except Exception as exc:
            logger.warning("tool_execution_failed", tool=tool_name, agent_id=agent.id, error=str(exc))
            raise ToolExecutionError(f"Tool {tool_name} failed: {exc}") from exc
        return ToolResult(tool=tool_name, allowed=True, output=output, rollback_entry=rollback_entry)


@dataclass(slots=True)
class ToolSession:
    gate: PolicyGatedToolExecutor
    agent: OrgAgent
    task_id: str | None = None
    invocations: list[ToolResult] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)

    async def execute(self, tool_name: str, args: Mapping[str, Any] | None = None) -> ToolResult:
        try:
            result = await self.gate.execute(tool_name, dict(args or {}), agent=self.agent, task_id=self.task_id)
        except ExecutorError as exc:
            self.failures.append({"tool": tool_name, "error": str(exc)})
            raise
        self.invocations.append(result)
        return result

    @property
    def blocked(self) -> list[ToolResult]:
        return [result for result in self.invocations if not result.allowed]


__all__ = [
    "AgentExecutor",
    "AgentResponse",
    "ExecutionContext",
    "POLICY_VIOLATION_PREFIX",
    "PolicyGatedToolExecutor",
    "ToolExecutor",
    "ToolResult",
    "ToolSession",
    "coerce_response",
]
