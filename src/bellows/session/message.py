"""Session message and part models.

Messages and parts are pydantic models discriminated on a literal tag so that a
stored JSON row always validates back into exactly one variant.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from bellows.config import DEFAULT_PROVIDER
from bellows.errors import InvalidStateError


def now_ms() -> int:
    return int(time.time() * 1000)


class ModelRef(BaseModel):
    provider_id: str
    model_id: str

    @classmethod
    def parse(cls, value: str) -> ModelRef:
        provider, sep, model = value.partition("/")
        if not sep:
            return cls(provider_id=DEFAULT_PROVIDER, model_id=value)
        return cls(provider_id=provider, model_id=model)

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


class PartTime(BaseModel):
    start: int | None = None
    end: int | None = None


class _PartBase(BaseModel):
    id: str
    session_id: str
    message_id: str


class TextPart(_PartBase):
    type: Literal["text"] = "text"
    text: str = ""
    synthetic: bool = False
    ignored: bool = False
    time: PartTime | None = None


class FileSourceRange(BaseModel):
    start: int
    end: int


class FileSource(BaseModel):
    type: Literal["file", "symbol", "resource"] = "file"
    path: str
    name: str | None = None
    range: FileSourceRange | None = None


class FilePart(_PartBase):
    type: Literal["file"] = "file"
    mime: str
    url: str
    filename: str | None = None
    source: FileSource | None = None


class ReasoningPart(_PartBase):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""
    time: PartTime = Field(default_factory=PartTime)


# Tool state machine: pending -> running -> completed | error


class ToolStatePending(BaseModel):
    status: Literal["pending"] = "pending"
    input: dict[str, Any] = Field(default_factory=dict)
    raw: str = ""


class ToolStateRunning(BaseModel):
    status: Literal["running"] = "running"
    input: dict[str, Any] = Field(default_factory=dict)
    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    time: PartTime = Field(default_factory=lambda: PartTime(start=now_ms()))


class ToolStateCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    input: dict[str, Any] = Field(default_factory=dict)
    output: str
    title: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    time: PartTime
    attachments: list[FilePart] = Field(default_factory=list)


class ToolStateError(BaseModel):
    status: Literal["error"] = "error"
    input: dict[str, Any] = Field(default_factory=dict)
    error: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    time: PartTime


ToolState = Annotated[
    Union[ToolStatePending, ToolStateRunning, ToolStateCompleted, ToolStateError],
    Field(discriminator="status"),
]

TOOL_STATE_ORDER = {"pending": 0, "running": 1, "completed": 2, "error": 2}


class ToolPart(_PartBase):
    type: Literal["tool"] = "tool"
    call_id: str
    tool: str
    state: ToolState = Field(default_factory=ToolStatePending)

    @property
    def settled(self) -> bool:
        return self.state.status in ("completed", "error")

    def transition(self, state: ToolState) -> ToolPart:
        """Return a copy in ``state``; moving backwards or out of a terminal state fails."""
        current = self.state.status
        if self.settled or TOOL_STATE_ORDER[state.status] < TOOL_STATE_ORDER[current]:
            raise InvalidStateError(
                f"Tool part {self.id} cannot move from {current} to {state.status}"
            )
        return self.model_copy(update={"state": state})


Part = Annotated[
    Union[TextPart, FilePart, ToolPart, ReasoningPart],
    Field(discriminator="type"),
]


class TokenCache(BaseModel):
    read: int = 0
    write: int = 0


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: TokenCache = Field(default_factory=TokenCache)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            reasoning=self.reasoning + other.reasoning,
            cache=TokenCache(
                read=self.cache.read + other.cache.read,
                write=self.cache.write + other.cache.write,
            ),
        )


class MessageOutputLengthError(BaseModel):
    name: Literal["MessageOutputLengthError"] = "MessageOutputLengthError"
    message: str = "Output length exceeded"


class MessageAbortedError(BaseModel):
    name: Literal["MessageAbortedError"] = "MessageAbortedError"
    message: str = "Aborted"


class ProviderAuthError(BaseModel):
    name: Literal["ProviderAuthError"] = "ProviderAuthError"
    provider_id: str
    message: str


class APIError(BaseModel):
    name: Literal["APIError"] = "APIError"
    message: str
    status_code: int | None = None
    is_retryable: bool = False
    response_body: str | None = None


class UnknownError(BaseModel):
    name: Literal["Unknown"] = "Unknown"
    message: str


MessageError = Annotated[
    Union[
        MessageOutputLengthError,
        MessageAbortedError,
        ProviderAuthError,
        APIError,
        UnknownError,
    ],
    Field(discriminator="name"),
]


class MessageTime(BaseModel):
    created: int = Field(default_factory=now_ms)
    completed: int | None = None


class UserMessage(BaseModel):
    id: str
    session_id: str
    role: Literal["user"] = "user"
    time: MessageTime = Field(default_factory=MessageTime)
    agent: str
    model: ModelRef
    system: str | None = None


class AssistantMessage(BaseModel):
    id: str
    session_id: str
    role: Literal["assistant"] = "assistant"
    parent_id: str
    provider_id: str
    model_id: str
    agent: str
    time: MessageTime = Field(default_factory=MessageTime)
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    finish: str | None = None
    summary: bool = False
    error: MessageError | None = None

    @property
    def settled(self) -> bool:
        return self.time.completed is not None


MessageInfo = Annotated[
    Union[UserMessage, AssistantMessage],
    Field(discriminator="role"),
]


class MessageWithParts(BaseModel):
    info: MessageInfo
    parts: list[Part] = Field(default_factory=list)


# Caller input for prompt(); ids are assigned when the user message is stored.


class TextPartInput(BaseModel):
    type: Literal["text"] = "text"
    text: str
    synthetic: bool = False
    ignored: bool = False


class FilePartInput(BaseModel):
    type: Literal["file"] = "file"
    mime: str
    url: str
    filename: str | None = None
    source: FileSource | None = None


PartInput = Annotated[Union[TextPartInput, FilePartInput], Field(discriminator="type")]

part_adapter: TypeAdapter[Part] = TypeAdapter(Part)
message_adapter: TypeAdapter[MessageInfo] = TypeAdapter(MessageInfo)
message_error_adapter: TypeAdapter[MessageError] = TypeAdapter(MessageError)
part_input_adapter: TypeAdapter[PartInput] = TypeAdapter(PartInput)
