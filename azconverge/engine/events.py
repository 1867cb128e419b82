"""Resource state-change events.

EventBus -- Fans each ResourceEvent out to every subscriber; a failing
            subscriber is logged and never blocks the engine or the other
            subscribers.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from azconverge.models.resources import Operation, ResourceState

_log = structlog.get_logger(component="engine.events")


@dataclass(frozen=True)
class ResourceEvent:
    """Emitted once per resource when it reaches a terminal state."""

    resource_id: str
    type: str
    state: ResourceState
    operation: Operation | None = None
    properties: dict[str, Any] = field(default_factory=dict)  # resolved
    outputs: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


Subscriber = Callable[[ResourceEvent], None]


class EventBus:
    """Synchronous fan-out of ResourceEvents.

    Subscribers that need to do I/O schedule their own tasks.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.remove(subscriber)

    def emit(self, event: ResourceEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as exc:  # noqa: BLE001
                _log.error(
                    "event_subscriber_error",
                    subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                    resource_id=event.resource_id,
                    error=str(exc),
                )
