from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from runic_market.logging import fmt_fields, get_logger
from runic_market.schemas import EventType, utcnow

logger = get_logger("events")

Handler = Callable[["Notification"], None]


@runtime_checkable
class EventBus(Protocol):
    """Best-effort notification fan-out. Publishing never blocks the core."""

    def publish(self, event_type: EventType, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class Notification:
    event_type: EventType
    payload: dict[str, Any]
    ts: datetime = field(default_factory=utcnow)


class NullEventBus:
    def publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        _ = event_type, payload


class InMemoryEventBus:
    """Synchronous bus with explicit subscriptions.

    Handlers are registered per event type (or for every event with
    ``event_type=None``). A failing handler is logged and does not affect the
    publisher or the other handlers.
    """

    def __init__(self, *, keep_history: bool = True) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[EventType | None, list[Handler]] = {}
        self._history: list[Notification] = []
        self._keep_history = keep_history

    def subscribe(self, handler: Handler, event_type: EventType | None = None) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: Handler, event_type: EventType | None = None) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        note = Notification(event_type=event_type, payload=dict(payload))
        with self._lock:
            if self._keep_history:
                self._history.append(note)
            handlers = list(self._handlers.get(event_type, ())) + list(
                self._handlers.get(None, ())
            )
        for handler in handlers:
            try:
                handler(note)
            except Exception:
                logger.exception(
                    "Event handler failed %s", fmt_fields(event_type=event_type.value)
                )

    @property
    def history(self) -> list[Notification]:
        with self._lock:
            return list(self._history)

    def events_of(self, event_type: EventType) -> list[Notification]:
        return [n for n in self.history if n.event_type == event_type]


def publish_safely(bus: EventBus, event_type: EventType, payload: dict[str, Any]) -> None:
    try:
        bus.publish(event_type, payload)
    except Exception:
        logger.exception("Event publication failed %s", fmt_fields(event_type=event_type.value))
