"""
Domain events emitted on every financial transition.

The notification dispatcher (push, email, chat system messages) lives outside
this service. It subscribes to the in-process EventBus:

    from fiesta_escrow.events import EventType, event_bus

    async def on_completed(event):
        ...
    event_bus.subscribe(EventType.MATCH_COMPLETED, on_completed)

Services emit events only after their database transaction has committed,
so a subscriber never observes a transition that was later rolled back.
A failing subscriber is logged and recorded; it never fails the request.
"""

import asyncio
import enum
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Union

import structlog

logger = structlog.get_logger(__name__)


class EventType(str, enum.Enum):
    MATCH_ACCEPTED = "MatchAccepted"
    MATCH_REJECTED = "MatchRejected"
    MATCH_CANCELLED = "MatchCancelled"
    MATCH_COMPLETED = "MatchCompleted"
    WALLET_CHARGED = "WalletCharged"
    WALLET_TOPPED_UP = "WalletToppedUp"
    DISPUTE_OPENED = "DisputeOpened"
    DISPUTE_RESOLVED = "DisputeResolved"


@dataclass
class Event:
    """A domain event and its JSON-safe payload."""

    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "event_id": str(self.event_id),
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


EventHandler = Union[
    Callable[[Event], None],
    Callable[[Event], Coroutine[Any, Any, None]],
]


class EventBus:
    """Publish/subscribe hub keyed by event type ("*" receives everything)."""

    def __init__(self, max_failures: int = 1000) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._failures: list[tuple[Event, Exception]] = []
        self._max_failures = max_failures

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._handlers[key].append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        key = event_type.value if isinstance(event_type, EventType) else event_type
        handlers = self._handlers.get(key, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def clear(self) -> None:
        self._handlers.clear()
        self._failures.clear()

    async def emit(self, event: Event) -> list[Exception]:
        """Deliver an event to its subscribers, returning handler failures."""
        handlers = self._handlers.get(event.event_type.value, []) + self._handlers.get("*", [])
        logger.info(
            "Domain event",
            event_type=event.event_type.value,
            event_id=str(event.event_id),
            handler_count=len(handlers),
            **event.data,
        )

        errors: list[Exception] = []
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(exc),
                )
                errors.append(exc)
                self._failures.append((event, exc))
                if len(self._failures) > self._max_failures:
                    self._failures.pop(0)
        return errors

    async def publish(self, event_type: EventType, **data: Any) -> Event:
        """Build and emit an event; ids and amounts are converted to JSON-safe values."""
        event = Event(event_type=event_type, data={k: _plain(v) for k, v in data.items()})
        await self.emit(event)
        return event

    def failures(self) -> list[tuple[Event, Exception]]:
        return list(self._failures)


def _plain(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


event_bus = EventBus()
