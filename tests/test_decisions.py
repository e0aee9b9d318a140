from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from synergy.core.config import DecisionSettings
from synergy.core.exceptions import DecisionAlreadyResolvedError, DecisionNotFoundError
from synergy.orchestration.decisions import DecisionBroker, DecisionResponse
from synergy.orchestration.enums import DecisionStatus, DecisionType, TaskPriority
from synergy.services.events import Event, EventBus


@pytest.mark.asyncio
async def test_low_stakes_decisions_are_auto_approved() -> None:
    broker = DecisionBroker()

    decision = await broker.request(DecisionType.STRATEGIC, "Reorder backlog", priority=TaskPriority.LOW)

    assert decision.approved
    assert decision.resolved_by == "system"
    assert decision.resolution == "Auto-approved"
    assert await broker.list_pending() == []


@pytest.mark.asyncio
async def test_approval_policy_covers_critical_priority_and_listed_types() -> None:
    broker = DecisionBroker()

    assert broker.requires_approval(DecisionType.HIRE, TaskPriority.LOW)
    assert broker.requires_approval(DecisionType.STRATEGIC, TaskPriority.CRITICAL)
    assert not broker.requires_approval(DecisionType.EMERGENCY, TaskPriority.HIGH)


@pytest.mark.asyncio
async def test_request_publishes_correlated_message_and_waiter_gets_verdict() -> None:
    bus = EventBus()
    broker = DecisionBroker(events=bus)
    requests: list[dict] = []

    async def approver(event: Event) -> None:
        requests.append(event.payload)
        await broker.respond(
            DecisionResponse(correlation_id=event.payload["correlation_id"], approved=True, comment="go ahead")
        )

    bus.subscribe(approver, topics=["decision.requested"])

    decision = await broker.request_and_wait(DecisionType.HIRE, "Hire a data engineer", requester_id="agent-1")
    await bus.drain()

    assert decision.status is DecisionStatus.APPROVED
    assert decision.resolution == "go ahead"
    assert requests[0]["correlation_id"] == decision.decision_id
    assert requests[0]["decision"]["type"] == "hire"


@pytest.mark.asyncio
async def test_resolved_decisions_are_immutable() -> None:
    broker = DecisionBroker()
    decision = await broker.request(DecisionType.BUDGET, "Raise budget")

    rejected = await broker.resolve(decision.decision_id, approved=False, comment="not now")

    assert rejected.status is DecisionStatus.REJECTED
    with pytest.raises(DecisionAlreadyResolvedError):
        await broker.resolve(decision.decision_id, approved=True)
    assert (await broker.get(decision.decision_id)).status is DecisionStatus.REJECTED


@pytest.mark.asyncio
async def test_timeout_escalates_by_default_and_never_approves() -> None:
    broker = DecisionBroker(DecisionSettings(approval_timeout_seconds=0.05))

    decision = await broker.request_and_wait(DecisionType.SECURITY, "Open port 22")

    assert decision.status is DecisionStatus.ESCALATED
    assert not decision.approved
    assert decision.resolved_by == "system"


@pytest.mark.asyncio
async def test_timeout_can_deny_instead() -> None:
    broker = DecisionBroker(DecisionSettings(approval_timeout_seconds=0.05, timeout_action="deny"))

    decision = await broker.request_and_wait(DecisionType.FIRE, "Terminate the CTO")

    assert decision.status is DecisionStatus.REJECTED


@pytest.mark.asyncio
async def test_explicit_timeout_and_forced_approval() -> None:
    broker = DecisionBroker()

    forced = await broker.request(
        DecisionType.STRATEGIC, "Approve result", priority=TaskPriority.LOW, require_approval=True
    )
    waiter = asyncio.create_task(broker.wait_for_resolution(forced.decision_id, timeout=1.0))
    await asyncio.sleep(0)
    await broker.resolve(forced.decision_id, approved=True)

    assert (await waiter).approved
    skipped = await broker.request(DecisionType.HIRE, "Intern", require_approval=False)
    assert skipped.approved


@pytest.mark.asyncio
async def test_pending_gauge_and_unknown_ids() -> None:
    broker = DecisionBroker()
    decision = await broker.request(DecisionType.VAULT_ACCESS, "Read production keys")

    assert REGISTRY.get_sample_value("synergy_decisions_pending") == 1.0
    assert [item.decision_id for item in await broker.list_pending()] == [decision.decision_id]

    await broker.resolve(decision.decision_id, approved=False)
    assert REGISTRY.get_sample_value("synergy_decisions_pending") == 0.0
    with pytest.raises(DecisionNotFoundError):
        await broker.get("decision_missing")
