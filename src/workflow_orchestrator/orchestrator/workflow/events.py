from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """A fact the engine has already committed to the store.

    Subscribers observe; they never drive state transitions.
    """

    type: str
    payload: dict[str, object]
    run_id: str | None = None
    step_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "type": self.type,
            "payload": self.payload,
            "occurredAt": self.occurred_at.isoformat(),
        }
        if self.run_id is not None:
            out["runId"] = self.run_id
        if self.step_id is not None:
            out["stepId"] = self.step_id
        return out


class EventPublisher(Protocol):
    def publish(self, event: EngineEvent) -> None: ...


EventHandler = Callable[[EngineEvent], None]


class EventBus:
    """In-process fan-out of engine events.

    A handler that raises is logged and skipped; publishing never fails the
    operation that produced the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[tuple[str | None, EventHandler]] = []

    def subscribe(self, handler: EventHandler, *, event_type: str | None = None) -> None:
        with self._lock:
            self._handlers.append((event_type, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers = [(t, h) for t, h in self._handlers if h is not handler]

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for event_type, handler in handlers:
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event_type": event.type, "run_id": event.run_id},
                )
