from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, TypeAlias

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepStartEvent:
    session_id: str
    message_id: str
    step: int


@dataclass(frozen=True, slots=True)
class TextChunkEvent:
    session_id: str
    message_id: str
    part_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningChunkEvent:
    session_id: str
    message_id: str
    part_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallUpdateEvent:
    session_id: str
    message_id: str
    call_id: str
    tool_name: str
    status: str
    args: dict = field(default_factory=dict)
    title: str = ""
    output: str = ""
    error: str = ""


@dataclass(frozen=True, slots=True)
class StepFinishEvent:
    session_id: str
    message_id: str
    step: int
    finish: str | None
    verdict: str
    cost: float = 0.0


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None
    session_id: str | None = None


Event: TypeAlias = (
    StepStartEvent
    | TextChunkEvent
    | ReasoningChunkEvent
    | ToolCallUpdateEvent
    | StepFinishEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None]


class EventEmitter:
    """Fan-out channel for session events.

    Subscribers run synchronously in the emitting thread. A failing subscriber is
    logged and skipped so that presentation never interferes with persistence.
    """

    def __init__(self, callback: EventCallback | None = None):
        self._subscribers: list[EventCallback] = []
        self._lock = threading.Lock()
        if callback is not None:
            self.subscribe(callback)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: EventCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {type(event).__name__}")
