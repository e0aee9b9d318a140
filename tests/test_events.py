from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from synergy.core.config import EventSettings
from synergy.services.events import Event, EventBus


@pytest.mark.asyncio
async def test_emit_delivers_only_subscribed_topics() -> None:
    bus = EventBus()
    received: list[Event] = []

    async def subscriber(event: Event) -> None:
        received.append(event)

    bus.subscribe(subscriber, topics=["task.created"])
    bus.emit("task.created", {"task_id": "t1"})
    bus.emit("task.failed", {"task_id": "t1"})
    await bus.drain()

    assert [event.topic for event in received] == ["task.created"]
    assert received[0].payload == {"task_id": "t1"}
    assert received[0].to_payload()["topic"] == "task.created"


@pytest.mark.asyncio
async def test_failing_subscriber_is_retried_then_counted() -> None:
    bus = EventBus(EventSettings(delivery_attempts=2))
    attempts: list[str] = []

    async def flaky(event: Event) -> None:
        attempts.append(event.event_id)
        raise RuntimeError("subscriber down")

    labels = {"topic": "goal.updated"}
    before = REGISTRY.get_sample_value("synergy_event_delivery_failures_total", labels) or 0.0

    bus.subscribe(flaky)
    bus.emit("goal.updated", {})
    await bus.drain()

    assert len(attempts) == 2
    after = REGISTRY.get_sample_value("synergy_event_delivery_failures_total", labels)
    assert after == pytest.approx(before + 1.0)


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    received: list[str] = []

    async def subscriber(event: Event) -> None:
        received.append(event.topic)

    bus.subscribe(subscriber)
    bus.unsubscribe(subscriber)
    await bus.publish(Event(topic="agent.hired", payload={}))

    assert received == []


def test_emit_without_running_loop_is_dropped() -> None:
    bus = EventBus()

    async def subscriber(event: Event) -> None:  # pragma: no cover - never scheduled
        raise AssertionError("should not run")

    bus.subscribe(subscriber)
    event = bus.emit("task.created", {"task_id": "t1"})

    assert event.topic == "task.created"
    assert bus.pending_deliveries == 0
