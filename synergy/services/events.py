from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping
from uuid import uuid4

from tenacity import AsyncRetrying, stop_after_attempt, wait_random_exponential

from ..core.config import EventSettings
from ..core.logging import get_logger
from ..core.metrics import increment_event_delivery_failure

logger = get_logger(name=__name__)

EventTopic = Literal[
    "audit.entry",
    "policy.updated",
    "task.created",
    "task.assigned",
    "task.started",
    "task.review",
    "task.completed",
    "task.failed",
    "task.cancelled",
    "agent.hired",
    "agent.terminated",
    "agent.skill_acquired",
    "project.created",
    "project.completed",
    "decision.requested",
    "decision.resolved",
    "conflict.detected",
    "ensemble.completed",
    "collaboration.recorded",
    "rollback.backup_created",
    "rollback.restored",
    "diff.preview_required",
    "diff.applied",
    "diff.rejected",
    "goal.updated",
]


@dataclass(slots=True)
class Event:
    topic: EventTopic
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.event_id,
            "topic": self.topic,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }


Subscriber = Callable[[Event], Awaitable[None]]


class EventBus:
    """Topic based publish/subscribe channel for read-only observers.

    ``emit`` schedules delivery on the running loop and returns immediately, so
    publishers never wait on subscribers. A subscriber that raises is retried
    up to ``delivery_attempts`` times before the delivery is dropped and
    counted. Deliveries to one subscriber start in emit order; nothing is
    promised across topics.
    """

    def __init__(self, settings: EventSettings | None = None) -> None:
        self._settings = settings or EventSettings()
        self._subscribers: dict[Subscriber, frozenset[str] | None] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, subscriber: Subscriber, *, topics: Iterable[str] | None = None) -> None:
        self._subscribers[subscriber] = frozenset(topics) if topics is not None else None

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.pop(subscriber, None)

    def emit(self, topic: EventTopic, payload: Mapping[str, Any] | None = None) -> Event:
        event = Event(topic=topic, payload=dict(payload or {}))
        subscribers = self._matching(topic)
        if not subscribers:
            return event
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("event_dropped_no_loop", topic=topic)
            return event
        for subscriber in subscribers:
            task = loop.create_task(self._deliver(subscriber, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def publish(self, event: Event) -> None:
        subscribers = self._matching(event.topic)
        if not subscribers:
            logger.debug("event_publish_skipped", topic=event.topic)
            return
        await asyncio.gather(*(self._deliver(subscriber, event) for subscriber in subscribers))

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    def _matching(self, topic: str) -> list[Subscriber]:
        return [
            subscriber
            for subscriber, topics in list(self._subscribers.items())
            if topics is None or topic in topics
        ]

    async def _deliver(self, subscriber: Subscriber, event: Event) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.delivery_attempts),
                wait=wait_random_exponential(multiplier=0.05, max=1.0),
                reraise=True,
            ):
                with attempt:
                    await subscriber(event)
        except Exception as exc:
            logger.warning(
                "event_subscriber_failed",
                topic=event.topic,
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                error=str(exc),
            )
            increment_event_delivery_failure(topic=event.topic)


async def log_event(event: Event) -> None:
    logger.info("synergy_event", topic=event.topic, event_id=event.event_id)


__all__ = ["Event", "EventBus", "EventTopic", "Subscriber", "log_event"]
