from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from common.cancel import CancellationToken
from common.events import (
    EventEmitter,
    ReasoningChunkEvent,
    TextChunkEvent,
    ToolCallUpdateEvent,
)
from common.ids import ascending

from bellows import permission
from bellows.errors import InvalidStateError
from bellows.llm.events import (
    TOOL_CALL_FINISH_REASONS,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepFinish,
    StreamError,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    ToolInputStart,
)
from bellows.session.message import (
    AssistantMessage,
    FilePart,
    MessageAbortedError,
    MessageError,
    MessageOutputLengthError,
    PartTime,
    ReasoningPart,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    ToolStateRunning,
    now_ms,
)
from bellows.session.store import MessageStore
from bellows.tools.tool import InitContext, ToolContext

if TYPE_CHECKING:
    from bellows.agents import AgentConfig
    from bellows.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CONTINUE = "continue"
STOP = "stop"


@dataclass
class ProcessResult:
    verdict: str
    message: AssistantMessage
    error: MessageError | None = None
    finish: str | None = None
    tool_calls: int = 0


class StreamProcessor:
    """Projects one stream of model events onto the message store.

    An instance handles exactly one assistant message. ``reset()`` must be called
    before it is reused for the next round.
    """

    def __init__(
        self,
        store: MessageStore,
        tools: ToolRegistry,
        emitter: EventEmitter | None = None,
        ask: permission.AskFn | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.store = store
        self.tools = tools
        self.emitter = emitter or EventEmitter()
        self.ask = ask
        self.cancel = cancel or CancellationToken()
        self.reset()

    def reset(self) -> None:
        self._assistant: AssistantMessage | None = None
        self._agent: AgentConfig | None = None
        self._text: TextPart | None = None
        self._reasoning: ReasoningPart | None = None
        self._tool_parts: dict[str, ToolPart] = {}
        self._tokens = TokenUsage()
        self._cost = 0.0
        self._finish: str | None = None
        self._used = False

    def process(
        self,
        assistant: AssistantMessage,
        events: Iterable[StreamEvent],
        agent: AgentConfig,
    ) -> ProcessResult:
        if self._used:
            raise InvalidStateError("StreamProcessor must be reset before it is reused")
        self._used = True
        self._assistant = assistant
        self._agent = agent

        iterator = iter(events)
        try:
            for event in iterator:
                if self.cancel.cancelled:
                    break
                if isinstance(event, StreamError):
                    return self._fail(event.error)
                self._handle(event)
                if self.cancel.cancelled:
                    break
        finally:
            close = getattr(iterator, "close", None)
            if callable(close):
                close()

        if self.cancel.cancelled:
            return self._fail(MessageAbortedError(message=self.cancel.reason or "Aborted"))

        self._close_open_parts()
        error = MessageOutputLengthError() if self._finish == "length" else None
        settled = self.store.complete_assistant_message(
            assistant.id,
            cost=self._cost,
            tokens=self._tokens,
            finish=self._finish,
            error=error,
        )
        has_tools = bool(self._tool_parts)
        verdict = CONTINUE if has_tools or self._finish in TOOL_CALL_FINISH_REASONS else STOP
        logger.info(
            f"Assistant message {assistant.id} finished ({self._finish}); "
            f"{len(self._tool_parts)} tool calls, verdict={verdict}"
        )
        return ProcessResult(
            verdict=verdict,
            message=settled,
            error=error,
            finish=self._finish,
            tool_calls=len(self._tool_parts),
        )

    def _fail(self, error: MessageError) -> ProcessResult:
        assert self._assistant is not None
        self._close_open_parts()
        for part in list(self._tool_parts.values()):
            if not part.settled:
                self._settle_tool_error(part, "Tool execution aborted")
        settled = self.store.set_assistant_message_error(self._assistant.id, error)
        logger.warning(f"Assistant message {self._assistant.id} failed: {error.name}: {error.message}")
        return ProcessResult(
            verdict=STOP,
            message=settled,
            error=error,
            finish=self._finish,
            tool_calls=len(self._tool_parts),
        )

    def _handle(self, event: StreamEvent) -> None:
        if isinstance(event, TextStart):
            self._open_text()
        elif isinstance(event, TextDelta):
            self._append_text(event.text)
        elif isinstance(event, TextEnd):
            self._close_text()
        elif isinstance(event, ReasoningStart):
            self._open_reasoning()
        elif isinstance(event, ReasoningDelta):
            self._append_reasoning(event.text)
        elif isinstance(event, ReasoningEnd):
            self._close_reasoning()
        elif isinstance(event, ToolInputStart):
            self._pending_tool(event.call_id, event.tool_name)
        elif isinstance(event, ToolCall):
            self._run_tool(event)
        elif isinstance(event, StepFinish):
            self._tokens = self._tokens + event.usage
            self._cost += event.cost
            self._finish = event.finish_reason
        else:
            raise TypeError(f"Unexpected stream event: {type(event).__name__}")

    # Text and reasoning

    def _open_text(self) -> TextPart:
        if self._text is None:
            assert self._assistant is not None
            self._text = self.store.add_part(
                self._assistant.id,
                {"type": "text", "text": "", "time": {"start": now_ms()}},
            )
        return self._text

    def _append_text(self, delta: str) -> None:
        part = self._open_text()
        self._text = part.model_copy(update={"text": part.text + delta})
        self.store.update_part(self._text)
        self.emitter.emit(
            TextChunkEvent(
                session_id=part.session_id,
                message_id=part.message_id,
                part_id=part.id,
                text=delta,
            )
        )

    def _close_text(self) -> None:
        if self._text is None:
            return
        start = self._text.time.start if self._text.time else None
        self._text = self._text.model_copy(update={"time": PartTime(start=start, end=now_ms())})
        self.store.update_part(self._text)
        self._text = None

    def _open_reasoning(self) -> ReasoningPart:
        if self._reasoning is None:
            assert self._assistant is not None
            self._reasoning = self.store.add_part(
                self._assistant.id,
                {"type": "reasoning", "text": "", "time": {"start": now_ms()}},
            )
        return self._reasoning

    def _append_reasoning(self, delta: str) -> None:
        part = self._open_reasoning()
        self._reasoning = part.model_copy(update={"text": part.text + delta})
        self.store.update_part(self._reasoning)
        self.emitter.emit(
            ReasoningChunkEvent(
                session_id=part.session_id,
                message_id=part.message_id,
                part_id=part.id,
                text=delta,
            )
        )

    def _close_reasoning(self) -> None:
        if self._reasoning is None:
            return
        self._reasoning = self._reasoning.model_copy(
            update={"time": PartTime(start=self._reasoning.time.start, end=now_ms())}
        )
        self.store.update_part(self._reasoning)
        self._reasoning = None

    def _close_open_parts(self) -> None:
        self._close_text()
        self._close_reasoning()

    # Tools

    def _notify_tool(self, part: ToolPart, **extra: Any) -> None:
        state = part.state
        self.emitter.emit(
            ToolCallUpdateEvent(
                session_id=part.session_id,
                message_id=part.message_id,
                call_id=part.call_id,
                tool_name=part.tool,
                status=state.status,
                args=dict(state.input),
                **extra,
            )
        )

    def _save_tool(self, part: ToolPart) -> ToolPart:
        self._tool_parts[part.call_id] = part
        self.store.update_part(part)
        return part

    def _pending_tool(self, call_id: str, tool_name: str) -> ToolPart:
        existing = self._tool_parts.get(call_id)
        if existing is not None:
            return existing
        assert self._assistant is not None
        part = self.store.add_part(
            self._assistant.id,
            {"type": "tool", "call_id": call_id, "tool": tool_name, "state": {"status": "pending"}},
        )
        self._tool_parts[call_id] = part
        self._notify_tool(part)
        return part

    def _settle_tool_error(self, part: ToolPart, message: str) -> ToolPart:
        if not isinstance(part.state, ToolStateRunning):
            part = self._save_tool(part.transition(ToolStateRunning(input=part.state.input)))
        part = self._save_tool(
            part.transition(
                ToolStateError(
                    input=part.state.input,
                    error=message,
                    metadata=part.state.metadata,
                    time=PartTime(start=part.state.time.start, end=now_ms()),
                )
            )
        )
        self._notify_tool(part, error=message)
        return part

    def _run_tool(self, event: ToolCall) -> None:
        assert self._assistant is not None and self._agent is not None
        part = self._pending_tool(event.call_id, event.tool_name)
        if part.settled:
            logger.warning(f"Ignoring repeated tool call {event.call_id}")
            return
        part = self._save_tool(
            part.transition(ToolStateRunning(input=event.args, time=PartTime(start=now_ms())))
        )
        self._notify_tool(part)

        if event.parse_error is not None:
            self._settle_tool_error(
                part,
                f"The {event.tool_name} tool was called with invalid arguments: "
                f"{event.parse_error}.\nPlease rewrite the input so it satisfies the expected schema.",
            )
            return

        tool = self.tools.get(event.tool_name)
        if tool is None:
            logger.info(f"Model requested unknown tool {event.tool_name}")
            self._settle_tool_error(part, f"tool not found: {event.tool_name}")
            return

        agent = self._agent
        ctx = ToolContext(
            session_id=self._assistant.session_id,
            message_id=self._assistant.id,
            call_id=event.call_id,
            agent=agent.name,
            cancel=self.cancel,
            on_metadata=lambda title, metadata: self._tool_metadata(event.call_id, title, metadata),
            on_ask=lambda request: permission.resolve(agent.permission, request, self.ask),
        )
        try:
            info = tool.init(InitContext(agent=agent))
            result = info.run(event.args, ctx)
        except Exception as e:
            logger.info(f"Tool {event.tool_name} failed: {e}")
            self._settle_tool_error(self._tool_parts[event.call_id], str(e) or type(e).__name__)
            return

        current = self._tool_parts[event.call_id]
        attachments = [
            FilePart(
                id=ascending("part"),
                session_id=current.session_id,
                message_id=current.message_id,
                **attachment,
            )
            for attachment in result.attachments
        ]
        current = self._save_tool(
            current.transition(
                ToolStateCompleted(
                    input=event.args,
                    output=result.output,
                    title=result.title,
                    metadata={**current.state.metadata, **result.metadata},
                    time=PartTime(start=current.state.time.start, end=now_ms()),
                    attachments=attachments,
                )
            )
        )
        self._notify_tool(current, title=result.title, output=result.output)

    def _tool_metadata(self, call_id: str, title: str | None, metadata: dict[str, Any]) -> None:
        part = self._tool_parts.get(call_id)
        if part is None or not isinstance(part.state, ToolStateRunning):
            return
        state = part.state.model_copy(
            update={
                "title": title if title is not None else part.state.title,
                "metadata": {**part.state.metadata, **metadata},
            }
        )
        part = self._save_tool(part.transition(state))
        self._notify_tool(part, title=state.title or "")
