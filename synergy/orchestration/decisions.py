from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from uuid import uuid4

from ..core.config import DecisionSettings
from ..core.exceptions import DecisionAlreadyResolvedError, DecisionNotFoundError
from ..core.logging import get_logger
from ..core.metrics import record_decision, set_pending_decisions
from ..services.events import EventBus
from .enums import DecisionStatus, DecisionType, TaskPriority

logger = get_logger(name=__name__)

_FROM_SETTINGS: Any = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Decision:
    decision_id: str
    decision_type: DecisionType
    title: str
    description: str
    requester_id: str
    priority: TaskPriority
    status: DecisionStatus
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    resolved_at: datetime | None = None
    resolution: str | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status is not DecisionStatus.PENDING

    @property
    def approved(self) -> bool:
        return self.status is DecisionStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "type": self.decision_type.value,
            "title": self.title,
            "description": self.description,
            "requester_id": self.requester_id,
            "priority": self.priority.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "data": self.data,
        }


@dataclass(slots=True, frozen=True)
class DecisionRequest:
    """Outbound message asking an approver for a verdict."""

    correlation_id: str
    decision: Mapping[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {"correlation_id": self.correlation_id, "decision": dict(self.decision)}


@dataclass(slots=True, frozen=True)
class DecisionResponse:
    """Inbound verdict, matched to its request by ``correlation_id``."""

    correlation_id: str
    approved: bool
    comment: str | None = None
    responder: str = "ceo"


class DecisionStore:
    async def create(self, decision: Decision) -> Decision:
        return await self._create(decision)

    async def get(self, decision_id: str) -> Decision | None:
        return await self._get(decision_id)

    async def replace(self, decision: Decision) -> None:
        await self._replace(decision)

    async def list(self, *, status: DecisionStatus | None = None) -> list[Decision]:
        decisions = await self._list_all()
        if status is None:
            return decisions
        return [decision for decision in decisions if decision.status is status]

    # Abstract hooks -----------------------------------------------------------------

    async def _create(self, decision: Decision) -> Decision:
        raise NotImplementedError

    async def _get(self, decision_id: str) -> Decision | None:
        raise NotImplementedError

    async def _replace(self, decision: Decision) -> None:
        raise NotImplementedError

    async def _list_all(self) -> list[Decision]:
        raise NotImplementedError


class InMemoryDecisionStore(DecisionStore):
    def __init__(self) -> None:
        self._decisions: dict[str, Decision] = {}
        self._lock = asyncio.Lock()

    async def _create(self, decision: Decision) -> Decision:
        async with self._lock:
            self._decisions[decision.decision_id] = self._clone(decision)
        return self._clone(decision)

    async def _get(self, decision_id: str) -> Decision | None:
        async with self._lock:
            decision = self._decisions.get(decision_id)
            return None if decision is None else self._clone(decision)

    async def _replace(self, decision: Decision) -> None:
        async with self._lock:
            current = self._decisions.get(decision.decision_id)
            if current is None:
                raise DecisionNotFoundError(decision.decision_id)
            if current.is_resolved:
                raise DecisionAlreadyResolvedError(decision.decision_id)
            self._decisions[decision.decision_id] = self._clone(decision)

    async def _list_all(self) -> list[Decision]:
        async with self._lock:
            return [self._clone(decision) for decision in self._decisions.values()]

    @staticmethod
    def _clone(decision: Decision) -> Decision:
        return replace(decision, data=dict(decision.data))


class DecisionBroker:
    """Routes governance decisions to a human approver and back.

    A decision needing a verdict is published as a ``DecisionRequest`` on the
    event bus; the verdict comes back as a ``DecisionResponse`` carrying the
    same correlation id. Waiters give up after the configured timeout and the
    decision is then denied or escalated, never approved.
    """

    def __init__(
        self,
        settings: DecisionSettings | None = None,
        *,
        store: DecisionStore | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or DecisionSettings()
        self._store = store or InMemoryDecisionStore()
        self._events = events
        self._clock = clock or _utcnow
        self._waiters: dict[str, asyncio.Future[Decision]] = {}

    def requires_approval(self, decision_type: DecisionType | str, priority: TaskPriority | str) -> bool:
        if TaskPriority(priority) is TaskPriority.CRITICAL:
            return True
        return DecisionType(decision_type).value in self._settings.approval_types

    async def request(
        self,
        decision_type: DecisionType | str,
        title: str,
        *,
        description: str = "",
        requester_id: str = "system",
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        data: Mapping[str, Any] | None = None,
        require_approval: bool | None = None,
    ) -> Decision:
        """Open a decision. Types and priorities outside the approval policy resolve at once.

        ``require_approval=True`` sends the decision to the approver regardless
        of the policy, ``False`` approves it immediately.
        """
        decision = Decision(
            decision_id=f"decision_{uuid4().hex[:12]}",
            decision_type=DecisionType(decision_type),
            title=title,
            description=description,
            requester_id=requester_id,
            priority=TaskPriority(priority),
            status=DecisionStatus.PENDING,
            created_at=self._clock(),
            data=dict(data or {}),
        )
        await self._store.create(decision)

        if require_approval is None:
            require_approval = self.requires_approval(decision.decision_type, decision.priority)
        if not require_approval:
            return await self._finalize(
                decision.decision_id,
                DecisionStatus.APPROVED,
                comment="Auto-approved",
                responder="system",
            )

        self._waiters[decision.decision_id] = asyncio.get_running_loop().create_future()
        set_pending_decisions(count=len(self._waiters))
        logger.info(
            "decision_requested",
            decision_id=decision.decision_id,
            type=decision.decision_type.value,
            priority=decision.priority.value,
        )
        if self._events is not None:
            request = DecisionRequest(correlation_id=decision.decision_id, decision=decision.to_dict())
            self._events.emit("decision.requested", request.to_payload())
        return decision

    async def respond(self, response: DecisionResponse) -> Decision:
        status = DecisionStatus.APPROVED if response.approved else DecisionStatus.REJECTED
        return await self._finalize(
            response.correlation_id,
            status,
            comment=response.comment,
            responder=response.responder,
        )

    async def resolve(
        self,
        decision_id: str,
        *,
        approved: bool,
        comment: str | None = None,
        responder: str = "ceo",
    ) -> Decision:
        return await self.respond(
            DecisionResponse(correlation_id=decision_id, approved=approved, comment=comment, responder=responder)
        )

    async def wait_for_resolution(self, decision_id: str, *, timeout: float | None = _FROM_SETTINGS) -> Decision:
        decision = await self.get(decision_id)
        if decision.is_resolved:
            return decision
        future = self._waiters.get(decision_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._waiters[decision_id] = future
        seconds = self._settings.approval_timeout_seconds if timeout is _FROM_SETTINGS else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), seconds)
        except asyncio.TimeoutError:
            return await self._expire(decision_id, seconds)

    async def request_and_wait(
        self,
        decision_type: DecisionType | str,
        title: str,
        **kwargs: Any,
    ) -> Decision:
        timeout = kwargs.pop("timeout", _FROM_SETTINGS)
        decision = await self.request(decision_type, title, **kwargs)
        if decision.is_resolved:
            return decision
        return await self.wait_for_resolution(decision.decision_id, timeout=timeout)

    async def get(self, decision_id: str) -> Decision:
        decision = await self._store.get(decision_id)
        if decision is None:
            raise DecisionNotFoundError(decision_id)
        return decision

    async def list_pending(self) -> list[Decision]:
        return await self._store.list(status=DecisionStatus.PENDING)

    async def list(self, *, status: DecisionStatus | None = None) -> list[Decision]:
        return await self._store.list(status=status)

    async def _expire(self, decision_id: str, seconds: float | None) -> Decision:
        status = DecisionStatus.REJECTED if self._settings.timeout_action == "deny" else DecisionStatus.ESCALATED
        logger.warning("decision_timed_out", decision_id=decision_id, seconds=seconds, fallback=status.value)
        try:
            return await self._finalize(
                decision_id,
                status,
                comment=f"No verdict within {seconds} seconds",
                responder="system",
            )
        except DecisionAlreadyResolvedError:
            # A verdict landed between the timeout and this call.
            return await self.get(decision_id)

    async def _finalize(
        self,
        decision_id: str,
        status: DecisionStatus,
        *,
        comment: str | None,
        responder: str,
    ) -> Decision:
        decision = await self.get(decision_id)
        if decision.is_resolved:
            raise DecisionAlreadyResolvedError(decision_id)
        decision.status = status
        decision.resolved_at = self._clock()
        decision.resolution = comment
        decision.resolved_by = responder
        await self._store.replace(decision)

        future = self._waiters.pop(decision_id, None)
        if future is not None and not future.done():
            future.set_result(decision)
        set_pending_decisions(count=len(self._waiters))
        record_decision(decision_type=decision.decision_type.value, status=status.value)
        logger.info("decision_resolved", decision_id=decision_id, status=status.value, responder=responder)
        if self._events is not None:
            self._events.emit("decision.resolved", decision.to_dict())
        return decision


__all__ = [
    "Decision",
    "DecisionBroker",
    "DecisionRequest",
    "DecisionResponse",
    "DecisionStore",
    "InMemoryDecisionStore",
]
