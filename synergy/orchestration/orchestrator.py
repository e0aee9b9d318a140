from __future__ import annotations

import asyncio
import json
import re
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    AgentLimitError,
    AgentNotFoundError,
    ExecutorError,
    InvalidTransitionError,
    ProjectNotFoundError,
    TaskNotFoundError,
    TerminationRefusedError,
)
from ..core.logging import configure_logging, get_logger
from ..core.metrics import observe_task_latency, record_task_transition, render_latest
from ..services.audit import AuditLogger
from ..services.collaboration import CollaborationHistory, CollaborationRecord
from ..services.disputes import ConflictDetector
from ..services.events import EventBus, EventTopic
from ..services.rollback import RollbackManager
from .decisions import Decision, DecisionBroker, DecisionResponse
from .enums import AgentLevel, AgentStatus, DecisionType, ProjectStatus, TaskPriority, TaskStatus
from .ensemble import EnsembleManager
from .executors import (
    AgentExecutor,
    AgentResponse,
    ExecutionContext,
    PolicyGatedToolExecutor,
    ToolExecutor,
    coerce_response,
)
from .guardrails import SecurityAuditor
from .negotiation import ResourceOptimizer, skill_matches
from .planner import ObjectivePlanner
from .policy import PolicyEngine
from .scheduler import (
    DispatchReport,
    TaskOutcome,
    TaskScheduler,
    dependencies_met,
    failed_dependency,
    ready_tasks,
)
from .state import OrgAgent, Project, Task
from .store import OrgStateStore

logger = get_logger(name=__name__)

CEO_NAME = "CEO"
HISTORY_IN_PROMPT = 5
INTELLIGENCE_PREVIEW = 500

_COLLABORATION_REQUEST = re.compile(r'\{"request_collaboration":\s*true[^}]*\}', re.IGNORECASE)
_ACTIVE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.REVIEW})

# skill keyword -> policy role; first hit wins, anything else is an assistant
_ROLE_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("coder", ("code", "coding", "develop", "program", "engineer", "python", "javascript")),
    ("researcher", ("research", "search", "analysis", "analy")),
    ("reviewer", ("review", "audit", "qa")),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def infer_role(skills: Iterable[str]) -> str:
    lowered = [skill.lower() for skill in skills]
    for role, keywords in _ROLE_HINTS:
        if any(keyword in skill for skill in lowered for keyword in keywords):
            return role
    return "assistant"


@dataclass(slots=True)
class CollaborationOutcome:
    success: bool
    result: str | None = None
    error: str | None = None
    helper_id: str | None = None
    source: str = "none"
    acquired_skills: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "helper_id": self.helper_id,
            "source": self.source,
            "acquired_skills": list(self.acquired_skills),
        }


@dataclass(slots=True)
class ObjectiveResult:
    project: Project
    report: DispatchReport
    fallback_plan: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project.id,
            "status": self.project.status.value,
            "fallback_plan": self.fallback_plan,
            "tasks": self.report.as_dict(),
        }


class Orchestrator:
    """The organization core: agents, tasks, projects and the decisions gating them.

    Collaborators are injected; anything left out is built from ``settings``.
    State mutations between two awaits are atomic, so every path that awaits
    an executor or an approver re-checks the task status before writing.
    """

    def __init__(
        self,
        executor: AgentExecutor,
        *,
        settings: Settings | None = None,
        tools: ToolExecutor | None = None,
        events: EventBus | None = None,
        audit: AuditLogger | None = None,
        policy: PolicyEngine | None = None,
        rollback: RollbackManager | None = None,
        history: CollaborationHistory | None = None,
        optimizer: ResourceOptimizer | None = None,
        detector: ConflictDetector | None = None,
        ensemble: EnsembleManager | None = None,
        decisions: DecisionBroker | None = None,
        scheduler: TaskScheduler | None = None,
        planner: ObjectivePlanner | None = None,
        auditor: SecurityAuditor | None = None,
        store: OrgStateStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow
        data_dir = Path(self._settings.storage.data_dir)

        self._executor = executor
        self._events = events or EventBus(self._settings.events)
        self._audit = audit or AuditLogger(self._settings.audit, events=self._events, clock=self._clock)
        self._policy = policy or PolicyEngine(
            self._audit, settings=self._settings.policy, events=self._events, clock=self._clock
        )
        self._rollback = rollback or RollbackManager(self._settings.rollback, events=self._events, clock=self._clock)
        self._history = history or CollaborationHistory(
            data_dir, settings=self._settings.collaboration, events=self._events, clock=self._clock
        )
        self._optimizer = optimizer or ResourceOptimizer(self._settings.bidding, history=self._history)
        self._detector = detector or ConflictDetector(self._settings.conflicts, events=self._events)
        self._ensemble = ensemble or EnsembleManager(
            executor,
            lambda: list(self._agents.values()),
            settings=self._settings.ensemble,
            detector=self._detector,
            events=self._events,
        )
        self._decisions = decisions or DecisionBroker(self._settings.decisions, events=self._events, clock=self._clock)
        self._scheduler = scheduler or TaskScheduler(self._settings.scheduling)
        self._planner = planner or ObjectivePlanner(executor)
        self._auditor = auditor or SecurityAuditor()
        self._store = store or OrgStateStore(data_dir)
        self._gate = (
            PolicyGatedToolExecutor(tools, self._policy, rollback=self._rollback, on_tool_use=self.record_tool_use)
            if tools is not None
            else None
        )

        self._agents: dict[str, OrgAgent] = {}
        self._tasks: dict[str, Task] = {}
        self._projects: dict[str, Project] = {}
        self._running: dict[str, asyncio.Task[TaskOutcome]] = {}
        self._released = asyncio.Condition()
        self._loop_task: asyncio.Task[None] | None = None
        self._assembling: set[str] = set()
        self._log = logger.bind(component="synergy")

    # Collaborators ------------------------------------------------------------------

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def policy(self) -> PolicyEngine:
        return self._policy

    @property
    def rollback(self) -> RollbackManager:
        return self._rollback

    @property
    def history(self) -> CollaborationHistory:
        return self._history

    @property
    def decisions(self) -> DecisionBroker:
        return self._decisions

    @property
    def ensemble(self) -> EnsembleManager:
        return self._ensemble

    # Lifecycle ----------------------------------------------------------------------

    async def initialize(self) -> None:
        await self._rollback.initialize()
        await self._history.initialize()
        snapshot = await self._store.load()
        self._agents = {agent.id: agent for agent in snapshot.agents}
        self._tasks = {task.id: task for task in snapshot.tasks}
        self._projects = {project.id: project for project in snapshot.projects}
        self._recover_interrupted()
        if not self._agents:
            await self._create_ceo()
        await self._persist()
        self._log.info(
            "organization_loaded",
            agents=len(self._agents),
            tasks=len(self._tasks),
            projects=len(self._projects),
        )

    async def close(self) -> None:
        await self.stop()
        jobs = list(self._running.values())
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        await self._audit.flush()
        self._policy.close()
        await self._persist()
        await self._events.drain()

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["Orchestrator"]:
        configure_logging(self._settings.observability.log_level)
        await self.initialize()
        try:
            yield self
        finally:
            await self.close()

    async def start(self) -> None:
        """Run ``process_tasks`` in the background every ``process_interval_seconds``."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._process_loop())
            self._log.info("process_loop_started")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
            self._log.info("process_loop_stopped")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _process_loop(self) -> None:
        interval = self._settings.scheduling.process_interval_seconds
        while True:
            try:
                await self.process_tasks()
            except Exception as exc:
                self._log.exception("process_loop_pass_failed", error=str(exc))
            await asyncio.sleep(interval)

    async def wait_idle(self) -> None:
        """Wait for every execution started by ``process_tasks`` to finish."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    def export_metrics(self) -> tuple[bytes, str] | None:
        """Prometheus exposition for the process, or None when metrics export is disabled."""
        if not self._settings.observability.prometheus_enabled:
            return None
        return render_latest()

    # Agents -------------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> OrgAgent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def list_agents(self) -> list[OrgAgent]:
        return list(self._agents.values())

    @property
    def ceo(self) -> OrgAgent | None:
        return next((agent for agent in self._agents.values() if agent.level is AgentLevel.CEO), None)

    async def create_agent(
        self,
        *,
        name: str,
        role: str,
        department: str = "general",
        level: AgentLevel | str = AgentLevel.JUNIOR,
        skills: Sequence[str] = (),
        system_prompt: str = "",
        manager_id: str | None = None,
        hired_by: str = "system",
    ) -> OrgAgent:
        if len(self._agents) >= self._settings.scheduling.max_agents:
            raise AgentLimitError(f"Organization is at its limit of {self._settings.scheduling.max_agents} agents")
        manager = self.get_agent(manager_id) if manager_id is not None else None
        agent = OrgAgent(
            name=name,
            role=role,
            department=department,
            level=AgentLevel(level),
            skills=list(skills),
            system_prompt=system_prompt or f"You are {name}, a {role} in the {department} department.",
            manager_id=manager_id,
            created_at=self._clock(),
        )
        self._agents[agent.id] = agent
        if manager is not None:
            manager.direct_reports.append(agent.id)
        await self._audit.log_action(
            hired_by,
            "agent.hire",
            "organization",
            after={"name": agent.name, "role": agent.role, "skills": agent.skills},
            context={"resourceId": agent.id},
        )
        await self._persist()
        self._log.info("agent_hired", agent_id=agent.id, name=agent.name, role=agent.role, hired_by=hired_by)
        self._emit("agent.hired", {"agent": self._agent_summary(agent), "hired_by": hired_by})
        return agent

    async def reassign_manager(self, agent_id: str, manager_id: str | None) -> OrgAgent:
        agent = self.get_agent(agent_id)
        if manager_id is not None:
            cursor: str | None = manager_id
            while cursor is not None:
                if cursor == agent_id:
                    raise ValueError(f"Making {manager_id} the manager of {agent_id} would create a reporting cycle")
                cursor = self.get_agent(cursor).manager_id
        if agent.manager_id is not None and agent.manager_id in self._agents:
            previous = self._agents[agent.manager_id]
            previous.direct_reports = [report for report in previous.direct_reports if report != agent_id]
        agent.manager_id = manager_id
        if manager_id is not None:
            self._agents[manager_id].direct_reports.append(agent_id)
        await self._persist()
        return agent

    async def terminate_agent(self, agent_id: str, *, reason: str = "", terminated_by: str = "ceo") -> bool:
        agent = self.get_agent(agent_id)
        if agent.level is AgentLevel.CEO:
            raise TerminationRefusedError(f"{agent.name} is the CEO and cannot be terminated")
        if agent.current_task is not None:
            raise TerminationRefusedError(f"{agent.name} is working on {agent.current_task}")
        if agent.level is AgentLevel.EXECUTIVE:
            decision = await self._decisions.request_and_wait(
                DecisionType.FIRE,
                f"Terminate agent: {agent.name}",
                description=reason,
                requester_id=terminated_by,
                priority=TaskPriority.HIGH,
                data={"agent_id": agent.id},
            )
            if not decision.approved:
                self._log.info("agent_termination_declined", agent_id=agent.id, status=decision.status.value)
                return False
            # Re-check after waiting for the verdict.
            if agent.id not in self._agents or agent.current_task is not None:
                return False

        manager = self._agents.get(agent.manager_id) if agent.manager_id else None
        for report_id in agent.direct_reports:
            report = self._agents.get(report_id)
            if report is None:
                continue
            report.manager_id = agent.manager_id
            if manager is not None:
                manager.direct_reports.append(report_id)
        if manager is not None:
            manager.direct_reports = [report for report in manager.direct_reports if report != agent.id]
        agent.status = AgentStatus.OFFLINE
        del self._agents[agent.id]

        await self._audit.log_action(
            terminated_by,
            "agent.terminate",
            "organization",
            before={"name": agent.name, "role": agent.role},
            context={"resourceId": agent.id, "reason": reason},
        )
        await self._persist()
        self._log.info("agent_terminated", agent_id=agent.id, reason=reason, terminated_by=terminated_by)
        self._emit(
            "agent.terminated",
            {"agent": self._agent_summary(agent), "reason": reason, "terminated_by": terminated_by},
        )
        return True

    async def hire_agent_for_task(self, task: Task) -> OrgAgent | None:
        scheduling = self._settings.scheduling
        if len(self._agents) >= scheduling.max_agents:
            self._log.info("hire_skipped_at_capacity", task_id=task.id)
            return None
        if len(self._agents) >= scheduling.hire_approval_threshold:
            decision = await self._decisions.request_and_wait(
                DecisionType.HIRE,
                f"Hire new agent for: {task.title}",
                description=f"Need to hire a new agent with skills: {', '.join(task.required_skills)}",
                requester_id="system",
                priority=task.priority,
                data={"task_id": task.id, "required_skills": list(task.required_skills)},
            )
            if not decision.approved:
                return None
            if len(self._agents) >= scheduling.max_agents:
                return None

        lead_skill = task.required_skills[0] if task.required_skills else "General"
        ceo = self.ceo
        return await self.create_agent(
            name=f"Specialist_{lead_skill}",
            role=infer_role(task.required_skills),
            department=task.department or "general",
            skills=task.required_skills,
            system_prompt=(
                f"You are a specialist agent created to handle: {task.title}. "
                f"Your skills: {', '.join(task.required_skills) or 'general'}."
            ),
            manager_id=ceo.id if ceo is not None else None,
        )

    def find_agents_by_skills(self, skills: Sequence[str]) -> list[OrgAgent]:
        return [
            agent
            for agent in self._agents.values()
            if agent.status is not AgentStatus.OFFLINE
            and any(skill_matches(agent.skills, skill) for skill in skills)
        ]

    # Tasks --------------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]:
        return [task for task in self._tasks.values() if status is None or task.status is status]

    async def create_task(
        self,
        title: str,
        description: str = "",
        *,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        department: str | None = None,
        required_skills: Sequence[str] = (),
        dependencies: Sequence[str] = (),
        project_id: str | None = None,
        parent_id: str | None = None,
        approval_required: bool | None = None,
        assigned_by: str | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> Task:
        for dependency_id in dependencies:
            self.get_task(dependency_id)
        project = self.get_project(project_id) if project_id is not None else None
        priority = TaskPriority(priority)
        task = Task(
            title=title,
            description=description,
            priority=priority,
            department=department,
            required_skills=list(required_skills),
            dependencies=list(dependencies),
            project_id=project_id,
            parent_id=parent_id,
            approval_required=priority is TaskPriority.CRITICAL if approval_required is None else approval_required,
            assigned_by=assigned_by,
            data=dict(data or {}),
            created_at=self._clock(),
        )
        self._tasks[task.id] = task
        if project is not None:
            project.tasks.append(task.id)
        record_task_transition(status=TaskStatus.PENDING.value)
        await self._audit.log_action(
            assigned_by or "system",
            "task.create",
            "task",
            after={"title": task.title, "priority": task.priority.value},
            context={"taskId": task.id},
        )
        await self._persist()
        self._log.info("task_created", task_id=task.id, priority=task.priority.value, project_id=project_id)
        self._emit("task.created", self._task_summary(task))
        return task

    async def assign_task(self, task_id: str, agent_id: str) -> Task:
        """Bind a pending task and an idle agent to each other in one step."""
        task = self.get_task(task_id)
        agent = self.get_agent(agent_id)
        if agent.current_task is not None or agent.status is not AgentStatus.IDLE:
            raise InvalidTransitionError(f"Agent {agent.id} is busy with {agent.current_task}")
        self._transition(task, TaskStatus.ASSIGNED)
        task.assigned_to = agent.id
        agent.current_task = task.id
        agent.status = AgentStatus.BUSY

        await self._audit.log_action(
            "system",
            "task.assign",
            "task",
            before={"status": TaskStatus.PENDING.value},
            after={"status": task.status.value, "assigned_to": agent.id},
            context={"taskId": task.id},
        )
        await self._persist()
        self._log.info("task_assigned", task_id=task.id, agent_id=agent.id)
        self._emit("task.assigned", {**self._task_summary(task), "agent": self._agent_summary(agent)})
        return task

    async def complete_task(
        self,
        task_id: str,
        result: Any,
        success: bool,
        *,
        error: str | None = None,
    ) -> Task:
        task = self.get_task(task_id)
        if task.status.is_terminal:
            self._log.info("task_already_finished", task_id=task.id, status=task.status.value)
            return task
        previous = task.status
        self._transition(task, TaskStatus.COMPLETED if success else TaskStatus.FAILED)
        task.completed_at = self._clock()
        task.result = result
        task.error = None if success else (error or "Task failed")

        agent = self._release_agent(task)
        if agent is not None:
            agent.record_outcome(success)
        observe_task_latency(
            priority=task.priority.value,
            outcome=task.status.value,
            latency=(task.completed_at - (task.started_at or task.created_at)).total_seconds(),
        )

        project = self._projects.get(task.project_id) if task.project_id else None
        if project is not None and success:
            project.intelligence.append(f"[{task.title}]: {self._stringify(result)[:INTELLIGENCE_PREVIEW]}")
        if project is not None:
            self._refresh_project(project)

        await self._audit.log_action(
            task.assigned_to or "system",
            "task.complete" if success else "task.fail",
            "task",
            before={"status": previous.value},
            after={"status": task.status.value, "error": task.error},
            context={"taskId": task.id},
        )
        await self._persist()
        await self._notify_released()
        self._log.info("task_finished", task_id=task.id, status=task.status.value, error=task.error)
        self._emit("task.completed" if success else "task.failed", self._task_summary(task))
        return task

    async def cancel_task(self, task_id: str, *, reason: str | None = None) -> Task:
        task = self.get_task(task_id)
        previous = task.status
        self._transition(task, TaskStatus.CANCELLED)
        task.completed_at = self._clock()
        task.error = reason
        self._release_agent(task)
        project = self._projects.get(task.project_id) if task.project_id else None
        if project is not None:
            self._refresh_project(project)
        await self._audit.log_action(
            "system",
            "task.cancel",
            "task",
            before={"status": previous.value},
            after={"status": task.status.value},
            context={"taskId": task.id, "reason": reason},
        )
        await self._persist()
        await self._notify_released()
        self._log.info("task_cancelled", task_id=task.id, reason=reason)
        self._emit("task.cancelled", self._task_summary(task))
        return task

    def record_tool_use(self, agent_id: str, tool: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None or agent.current_task is None:
            return
        task = self._tasks.get(agent.current_task)
        if task is not None and tool not in task.tools_used:
            task.tools_used.append(tool)

    async def process_tasks(self) -> list[str]:
        """One scheduling pass. Returns the ids of tasks handed to an agent."""
        scheduling = self._settings.scheduling
        active = sum(1 for task in self._tasks.values() if task.status in _ACTIVE_STATUSES)
        slots = scheduling.max_concurrent_tasks - active
        if slots <= 0:
            self._log.debug("scheduling_saturated", active=active)
            return []

        for task in list(self._tasks.values()):
            if task.status is not TaskStatus.PENDING:
                continue
            blocker = failed_dependency(task, self._tasks)
            if blocker is not None:
                await self.complete_task(task.id, None, False, error=self._dependency_error(blocker))

        dispatched: list[str] = []
        for task in ready_tasks(self._tasks):
            if len(dispatched) >= slots:
                break
            agent = self._find_best_agent(task)
            if agent is None and scheduling.auto_hire:
                agent = await self.hire_agent_for_task(task)
            # Hiring may have waited on an approver.
            if agent is None or task.status is not TaskStatus.PENDING or agent.status is not AgentStatus.IDLE:
                continue
            await self.assign_task(task.id, agent.id)
            job = asyncio.create_task(self.execute_task(task.id))
            self._running[task.id] = job
            job.add_done_callback(lambda _, task_id=task.id: self._running.pop(task_id, None))
            dispatched.append(task.id)
        if dispatched:
            self._log.info("scheduling_pass", dispatched=len(dispatched), active=active)
        return dispatched

    async def execute_task(self, task_id: str, *, depth: int = 0) -> TaskOutcome:
        """Run an assigned task through security scan, agent executor and approval."""
        task = self.get_task(task_id)
        if task.status is not TaskStatus.ASSIGNED or task.assigned_to is None:
            raise InvalidTransitionError(f"Task {task.id} is {task.status.value}, not assigned")
        agent = self.get_agent(task.assigned_to)

        if not dependencies_met(task, self._tasks):
            blocker = failed_dependency(task, self._tasks)
            if blocker is not None:
                return await self._fail(task, self._dependency_error(blocker))
            self._transition(task, TaskStatus.PENDING)
            task.assigned_to = None
            self._release_agent_record(agent, task)
            await self._persist()
            await self._notify_released()
            self._log.info("task_requeued_waiting_on_dependencies", task_id=task.id)
            return TaskOutcome(task_id=task.id, success=False, error="Waiting on dependencies", skipped=True)

        self._transition(task, TaskStatus.IN_PROGRESS)
        task.started_at = self._clock()
        await self._persist()
        self._emit("task.started", self._task_summary(task))

        audit = self._auditor.scan(task.description, context=f"Task: {task.title}")
        if not audit.safe:
            task.data["security"] = audit.as_dict()
        if audit.blocking:
            return await self._fail(task, f"Security check failed: {', '.join(audit.issues)}")

        provider = self._optimizer.negotiate_provider(task)
        session = self._gate.session(agent, task_id=task.id) if self._gate is not None else None
        context = ExecutionContext(
            agent=agent,
            task=task,
            provider=provider.provider,
            tools=session,
            data={"mode": "task", "depth": depth, "provider_reason": provider.reason},
        )
        try:
            response = await self._call_executor(agent.system_prompt, self._build_prompt(task, agent), context)
            text = await self._follow_collaboration(task, agent, response.text, context, depth)
        except ExecutorError as exc:
            return await self._fail(task, str(exc))

        if task.status is not TaskStatus.IN_PROGRESS:
            self._log.warning("task_changed_during_execution", task_id=task.id, status=task.status.value)
            return TaskOutcome(task_id=task.id, success=False, error=f"Task became {task.status.value}")
        if session is not None and session.blocked:
            task.data["blocked_tools"] = [result.as_dict() for result in session.blocked]
        agent.remember(task.description, text)

        needs_approval = task.approval_required
        if task.priority.value in self._settings.ensemble.validate_priorities:
            validation = await self._ensemble.ensemble_check(task.description)
            task.data["ensemble"] = validation.as_dict()
            if not validation.consensus:
                needs_approval = True
            if task.status is not TaskStatus.IN_PROGRESS:
                return TaskOutcome(task_id=task.id, success=False, error=f"Task became {task.status.value}")

        if needs_approval:
            approved = await self._await_approval(task, agent, text)
            if task.status is not TaskStatus.REVIEW:
                return TaskOutcome(task_id=task.id, success=False, error=f"Task became {task.status.value}")
            if not approved:
                verdict = task.data.get("decision_status", "rejected")
                return await self._fail(task, f"Task result not approved ({verdict})")

        await self.complete_task(task.id, text, True)
        return TaskOutcome(task_id=task.id, success=True, result=text)

    # Projects -----------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    async def create_project(self, name: str | None, objective: str) -> Project:
        outcome = await self._planner.plan(objective)
        plan = outcome.plan
        project = Project(
            name=name or plan.project_name or objective[:30] or "Project",
            objective=objective,
            shared_state={"plan": plan.summary, "fallback_plan": outcome.fallback},
            created_at=self._clock(),
        )
        self._projects[project.id] = project

        # Dependencies are attached at creation so no task is ever visible without them.
        created: dict[str, Task] = {}
        self._assembling.add(project.id)
        try:
            for planned in plan.in_dependency_order():
                created[planned.id] = await self.create_task(
                    planned.title,
                    planned.description,
                    priority=planned.priority,
                    department=planned.department,
                    required_skills=planned.required_skills,
                    dependencies=[created[dep].id for dep in planned.dependencies],
                    project_id=project.id,
                    assigned_by="planner",
                )
        finally:
            self._assembling.discard(project.id)
        self._refresh_project(project)
        await self._persist()
        self._log.info("project_created", project_id=project.id, tasks=len(created), fallback=outcome.fallback)
        self._emit("project.created", {"project_id": project.id, "name": project.name, "tasks": project.tasks})
        return project

    async def execute_project(self, project_id: str) -> DispatchReport:
        """Fan the project's pending tasks out concurrently and wait for all of them."""
        project = self.get_project(project_id)
        pending = [
            self._tasks[task_id]
            for task_id in project.tasks
            if task_id in self._tasks and self._tasks[task_id].status is TaskStatus.PENDING
        ]
        report = await self._scheduler.dispatch(pending, self._run_subtask, known=self._tasks)
        for task_id, outcome in report.outcomes.items():
            task = self._tasks.get(task_id)
            if task is not None and not outcome.success and not task.status.is_terminal:
                await self._fail(task, outcome.error or "Task did not complete")
        self._refresh_project(project)
        await self._persist()
        return report

    async def execute_objective(self, objective: str, *, name: str | None = None) -> ObjectiveResult:
        project = await self.create_project(name, objective)
        report = await self.execute_project(project.id)
        return ObjectiveResult(
            project=project,
            report=report,
            fallback_plan=bool(project.shared_state.get("fallback_plan")),
        )

    # Decisions ----------------------------------------------------------------------

    async def request_decision(
        self,
        decision_type: DecisionType | str,
        title: str,
        **kwargs: Any,
    ) -> Decision:
        return await self._decisions.request(decision_type, title, **kwargs)

    async def respond_to_decision(
        self,
        decision_id: str,
        approved: bool,
        *,
        comment: str | None = None,
        responder: str = "ceo",
    ) -> Decision:
        return await self._decisions.respond(
            DecisionResponse(correlation_id=decision_id, approved=approved, comment=comment, responder=responder)
        )

    async def list_pending_decisions(self) -> list[Decision]:
        return await self._decisions.list_pending()

    # Collaboration ------------------------------------------------------------------

    async def request_collaboration(
        self,
        requester_id: str,
        required_skills: Sequence[str],
        description: str,
        *,
        depth: int = 0,
    ) -> CollaborationOutcome:
        if depth >= self._settings.collaboration.max_depth:
            return CollaborationOutcome(success=False, error="Maximum collaboration depth reached")
        requester = self.get_agent(requester_id)
        candidates = [
            agent
            for agent in self.find_agents_by_skills(required_skills)
            if agent.id != requester.id and agent.status is AgentStatus.IDLE
        ]
        if not candidates:
            return CollaborationOutcome(success=False, error="No available agents with required skills")
        helper, source = self._optimizer.find_helper(requester, candidates)
        if helper is None:
            return CollaborationOutcome(success=False, error="No available agents with required skills")

        loop = asyncio.get_running_loop()
        started = loop.time()
        result: str | None = None
        error: str | None = None
        audit = self._auditor.scan(description, context=f"Collaboration request from {requester.name}")
        if audit.blocking:
            error = f"Security check failed: {', '.join(audit.issues)}"
        else:
            # The helper is unavailable to the scheduler until it has answered.
            helper.status = AgentStatus.BUSY
            context = ExecutionContext(
                agent=helper,
                tools=self._gate.session(helper) if self._gate is not None else None,
                data={"mode": "collaboration", "depth": depth, "requester_id": requester.id},
            )
            prompt = f"[Agent: {helper.name}] [Role: {helper.role}] [Assisting: {requester.name}]\n\n{description}"
            try:
                result = (await self._call_executor(helper.system_prompt, prompt, context)).text
            except ExecutorError as exc:
                error = str(exc)
            finally:
                if helper.status is AgentStatus.BUSY:
                    helper.status = AgentStatus.IDLE
                await self._notify_released()

        success = error is None
        await self._history.record(
            CollaborationRecord(
                requester_id=requester.id,
                requester_name=requester.name,
                helper_id=helper.id,
                helper_name=helper.name,
                required_skills=tuple(required_skills),
                task_description=description,
                outcome=result if success else str(error),
                success=success,
                duration_seconds=loop.time() - started,
                depth=depth,
                timestamp=self._clock(),
            )
        )
        acquired = await self._check_skill_acquisition(requester, helper, required_skills) if success else []
        self._log.info(
            "collaboration_finished",
            requester=requester.id,
            helper=helper.id,
            source=source,
            success=success,
        )
        return CollaborationOutcome(
            success=success,
            result=result,
            error=error,
            helper_id=helper.id,
            source=source,
            acquired_skills=acquired,
        )

    # Reporting ----------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        agents_by_status: dict[str, int] = {}
        for agent in self._agents.values():
            agents_by_status[agent.status.value] = agents_by_status.get(agent.status.value, 0) + 1
        tasks_by_status: dict[str, int] = {}
        for task in self._tasks.values():
            tasks_by_status[task.status.value] = tasks_by_status.get(task.status.value, 0) + 1
        projects_by_status: dict[str, int] = {}
        for project in self._projects.values():
            projects_by_status[project.status.value] = projects_by_status.get(project.status.value, 0) + 1
        pending = await self._decisions.list_pending()
        return {
            "agents": {"total": len(self._agents), **agents_by_status},
            "tasks": {"total": len(self._tasks), **tasks_by_status},
            "projects": {"total": len(self._projects), **projects_by_status},
            "pending_decisions": len(pending),
            "running": len(self._running),
            "collaborations": len(self._history.get_all()),
            "rollback_entries": len(self._rollback.get_history(limit=self._settings.rollback.history_limit)),
        }

    # Internals ----------------------------------------------------------------------

    async def _call_executor(
        self,
        system_prompt: str,
        message: str,
        context: ExecutionContext,
    ) -> AgentResponse:
        timeout = self._settings.scheduling.task_timeout_seconds

        async def attempt() -> AgentResponse:
            async for retry in self._scheduler.retry_policy.retrying():
                with retry:
                    return coerce_response(await self._executor.execute(system_prompt, message, context))
            raise ExecutorError("Agent executor returned no response")

        try:
            return await asyncio.wait_for(attempt(), timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutorError(f"Task execution timed out ({timeout:g}s limit)") from exc
        except ExecutorError:
            raise
        except Exception as exc:
            raise ExecutorError(f"Agent executor failed: {exc}") from exc

    async def _follow_collaboration(
        self,
        task: Task,
        agent: OrgAgent,
        text: str,
        context: ExecutionContext,
        depth: int,
    ) -> str:
        match = _COLLABORATION_REQUEST.search(text)
        if match is None:
            return text
        try:
            request = json.loads(match.group(0))
        except json.JSONDecodeError:
            return text
        skills = request.get("skills")
        description = request.get("task")
        if not skills or not description:
            return text
        if isinstance(skills, str):
            skills = [skills]

        outcome = await self.request_collaboration(agent.id, [str(skill) for skill in skills], str(description), depth=depth + 1)
        task.data.setdefault("collaborations", []).append(outcome.as_dict())
        if not outcome.success:
            return f"{text}\n\n[Collaboration failed: {outcome.error}]"
        continuation = (
            f"[Agent: {agent.name}] The collaboration result is:\n\n{outcome.result}\n\n"
            f"Now complete your original task: {task.description}"
        )
        follow_up = replace(context, data={**context.data, "continuation": True})
        return (await self._call_executor(agent.system_prompt, continuation, follow_up)).text

    async def _await_approval(self, task: Task, agent: OrgAgent, text: str) -> bool:
        self._transition(task, TaskStatus.REVIEW)
        await self._persist()
        self._emit("task.review", self._task_summary(task))
        decision = await self._decisions.request_and_wait(
            DecisionType.STRATEGIC,
            f"Approve task result: {task.title}",
            description=f"Agent {agent.name} completed the task. Result preview: {text[:200]}...",
            requester_id=agent.id,
            priority=task.priority,
            data={"task_id": task.id},
            require_approval=True,
        )
        task.data["decision_id"] = decision.decision_id
        task.data["decision_status"] = decision.status.value
        return decision.approved

    async def _check_skill_acquisition(
        self,
        requester: OrgAgent,
        helper: OrgAgent,
        skills: Sequence[str],
    ) -> list[str]:
        settings = self._settings.collaboration
        metrics = self._history.get_pair_metrics(requester.id, helper.id)
        if metrics is None:
            return []
        if metrics.total_collaborations < settings.skill_acquisition_count:
            return []
        if metrics.success_rate < settings.skill_acquisition_success_rate:
            return []
        acquired: list[str] = []
        for skill in skills:
            if skill_matches(requester.skills, skill) or skill in acquired:
                continue
            acquired.append(skill)
        if not acquired:
            return []
        requester.skills.extend(acquired)
        await self._persist()
        self._log.info("skills_acquired", agent_id=requester.id, skills=acquired, helper=helper.id)
        self._emit("agent.skill_acquired", {"agent_id": requester.id, "skills": acquired, "helper_id": helper.id})
        return acquired

    async def _run_subtask(self, task: Task) -> TaskOutcome:
        if task.status is not TaskStatus.PENDING:
            return TaskOutcome(task_id=task.id, success=task.status is TaskStatus.COMPLETED, result=task.result)
        agent = await self._acquire_agent(task)
        if agent is None or task.status is not TaskStatus.PENDING:
            return await self._fail(task, "No eligible agent available")
        await self.assign_task(task.id, agent.id)
        return await self.execute_task(task.id)

    async def _acquire_agent(self, task: Task) -> OrgAgent | None:
        while True:
            agent = self._find_best_agent(task)
            if agent is not None:
                return agent
            if self._settings.scheduling.auto_hire:
                hired = await self.hire_agent_for_task(task)
                if hired is not None and hired.status is AgentStatus.IDLE and hired.current_task is None:
                    return hired
                if hired is not None:
                    # A sibling took the new hire while it was being persisted.
                    continue
            if not any(self._fits(agent, task) for agent in self._agents.values() if agent.status is AgentStatus.BUSY):
                return None
            async with self._released:
                await self._released.wait()

    def _find_best_agent(self, task: Task) -> OrgAgent | None:
        candidates = [
            agent for agent in self._agents.values() if agent.status is AgentStatus.IDLE and self._fits(agent, task)
        ]
        if not candidates:
            return None
        agent, _ = self._optimizer.select_agent(task, candidates)
        return agent

    @staticmethod
    def _fits(agent: OrgAgent, task: Task) -> bool:
        if agent.level is AgentLevel.CEO or agent.status is AgentStatus.OFFLINE:
            return False
        department = task.department
        if department and department != "general" and agent.department not in {department, "general"}:
            return False
        if not task.required_skills:
            return True
        return any(skill_matches(agent.skills, skill) for skill in task.required_skills)

    async def _fail(self, task: Task, error: str) -> TaskOutcome:
        self._log.warning("task_failed", task_id=task.id, error=error)
        await self.complete_task(task.id, None, False, error=error)
        return TaskOutcome(task_id=task.id, success=False, error=error)

    def _transition(self, task: Task, status: TaskStatus) -> None:
        task.transition(status)
        record_task_transition(status=status.value)

    def _release_agent(self, task: Task) -> OrgAgent | None:
        if task.assigned_to is None:
            return None
        agent = self._agents.get(task.assigned_to)
        if agent is not None:
            self._release_agent_record(agent, task)
        return agent

    @staticmethod
    def _release_agent_record(agent: OrgAgent, task: Task) -> None:
        if agent.current_task == task.id:
            agent.current_task = None
            agent.status = AgentStatus.IDLE

    async def _notify_released(self) -> None:
        async with self._released:
            self._released.notify_all()

    def _refresh_project(self, project: Project) -> None:
        if project.status is not ProjectStatus.ACTIVE or not project.tasks or project.id in self._assembling:
            return
        tasks = [self._tasks[task_id] for task_id in project.tasks if task_id in self._tasks]
        if not all(task.status.is_terminal for task in tasks):
            return
        succeeded = all(task.status is TaskStatus.COMPLETED for task in tasks)
        project.status = ProjectStatus.COMPLETED if succeeded else ProjectStatus.FAILED
        project.completed_at = self._clock()
        self._log.info("project_finished", project_id=project.id, status=project.status.value)
        self._emit("project.completed", {"project_id": project.id, "status": project.status.value})

    def _recover_interrupted(self) -> None:
        for task in self._tasks.values():
            if task.status is TaskStatus.ASSIGNED:
                task.status = TaskStatus.PENDING
                task.assigned_to = None
            elif task.status in {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW}:
                task.status = TaskStatus.FAILED
                task.error = "Interrupted before completion"
                task.completed_at = self._clock()
        for agent in self._agents.values():
            if agent.status is AgentStatus.BUSY or agent.current_task is not None:
                agent.status = AgentStatus.IDLE
                agent.current_task = None

    async def _create_ceo(self) -> OrgAgent:
        agent = OrgAgent(
            name=CEO_NAME,
            role="ceo",
            department="executive",
            level=AgentLevel.CEO,
            skills=["leadership", "strategy", "planning"],
            system_prompt="You are the CEO of an autonomous organization. Set direction and approve key decisions.",
            created_at=self._clock(),
        )
        self._agents[agent.id] = agent
        self._log.info("ceo_created", agent_id=agent.id)
        return agent

    def _build_prompt(self, task: Task, agent: OrgAgent) -> str:
        sections = [f"[Agent: {agent.name}] [Role: {agent.role}] [Task: {task.title}]"]
        recent = agent.conversation_history[-HISTORY_IN_PROMPT:]
        if recent:
            turns = "\n\n".join(f"User: {turn.user_message}\nYou: {turn.agent_response}" for turn in recent)
            sections.append(f"=== PREVIOUS INTERACTIONS ===\n{turns}\n\n=== CURRENT TASK ===")
        sections.append(task.description or task.title)
        project = self._projects.get(task.project_id) if task.project_id else None
        if project is not None:
            intelligence = "\n".join(f"- {item}" for item in project.intelligence) or "No data discovered yet."
            sections.append(
                f"=== PROJECT BRIEFING: {project.name} ===\n"
                f"OBJECTIVE: {project.objective}\n"
                f"CURRENT COLLECTIVE INTELLIGENCE:\n{intelligence}"
            )
        return "\n\n".join(sections)

    def _dependency_error(self, dependency_id: str) -> str:
        dependency = self._tasks.get(dependency_id)
        label = dependency.title if dependency is not None else dependency_id
        return f'Dependency "{label}" failed.'

    async def _persist(self) -> None:
        saved = await self._store.save(
            agents=self._agents.values(),
            tasks=self._tasks.values(),
            projects=self._projects.values(),
        )
        if not saved:
            self._log.warning("org_state_save_failed")

    def _emit(self, topic: EventTopic, payload: Mapping[str, Any]) -> None:
        self._events.emit(topic, payload)

    @staticmethod
    def _stringify(result: Any) -> str:
        if isinstance(result, str):
            return result
        try:
            return json.dumps(result, default=str)
        except (TypeError, ValueError):
            return "[Complex Result Object]"

    @staticmethod
    def _task_summary(task: Task) -> dict[str, Any]:
        return {
            "task_id": task.id,
            "title": task.title,
            "status": task.status.value,
            "priority": task.priority.value,
            "assigned_to": task.assigned_to,
            "project_id": task.project_id,
            "error": task.error,
        }

    @staticmethod
    def _agent_summary(agent: OrgAgent) -> dict[str, Any]:
        return {
            "agent_id": agent.id,
            "name": agent.name,
            "role": agent.role,
            "department": agent.department,
            "level": agent.level.value,
        }


__all__ = ["CollaborationOutcome", "ObjectiveResult", "Orchestrator", "infer_role"]
