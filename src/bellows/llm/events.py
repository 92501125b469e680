from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias

from bellows.session.message import MessageError, TokenUsage


@dataclass(frozen=True, slots=True)
class TextStart:
    pass


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class TextEnd:
    pass


@dataclass(frozen=True, slots=True)
class ReasoningStart:
    pass


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningEnd:
    pass


@dataclass(frozen=True, slots=True)
class ToolInputStart:
    call_id: str
    tool_name: str


@dataclass(frozen=True, slots=True)
class ToolCall:
    call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    raw: str = ""
    parse_error: str | None = None


@dataclass(frozen=True, slots=True)
class StepFinish:
    usage: TokenUsage
    finish_reason: str
    cost: float = 0.0


@dataclass(frozen=True, slots=True)
class StreamError:
    error: MessageError
    exception: BaseException | None = None


StreamEvent: TypeAlias = (
    TextStart
    | TextDelta
    | TextEnd
    | ReasoningStart
    | ReasoningDelta
    | ReasoningEnd
    | ToolInputStart
    | ToolCall
    | StepFinish
    | StreamError
)

TOOL_CALL_FINISH_REASONS = frozenset({"tool-calls", "tool_calls", "tool-call", "tool_call"})
