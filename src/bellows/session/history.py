import json
from typing import Any, Iterable

from bellows.session.message import (
    AssistantMessage,
    FilePart,
    MessageWithParts,
    ReasoningPart,
    TextPart,
    ToolPart,
    UserMessage,
)


class MessageHistory:
    """Builds the chat-completions message list sent to the model."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []

    def add_user_message(self, content: list[dict[str, Any]]):
        self.messages.append({"role": "user", "content": content})

    def add_assistant_message(
        self, content: str | None = None, tool_calls: list[dict] | None = None
    ):
        message: dict[str, Any] = {"role": "assistant", "content": content or None}
        if tool_calls:
            message["tool_calls"] = tool_calls
        self.messages.append(message)

    def add_tool_result(self, tool_call_id: str, name: str, result: str):
        self.messages.append(
            {
                "role": "tool",
                "tool_call_id": tool_call_id,
                "name": name,
                "content": result,
            }
        )

    def add(self, item: MessageWithParts) -> None:
        info = item.info
        if isinstance(info, UserMessage):
            self._add_user(item)
        elif isinstance(info, AssistantMessage):
            self._add_assistant(item)
        else:
            raise TypeError(f"Unexpected message type: {type(info).__name__}")

    def _add_user(self, item: MessageWithParts) -> None:
        blocks: list[dict[str, Any]] = []
        for part in item.parts:
            if isinstance(part, TextPart):
                if not part.ignored:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, FilePart):
                # non-image file contents reach the model through synthetic text parts
                if part.mime.startswith("image/"):
                    blocks.append({"type": "image_url", "image_url": {"url": part.url}})
            elif not isinstance(part, (ToolPart, ReasoningPart)):
                raise TypeError(f"Unexpected part type: {type(part).__name__}")
        if blocks:
            self.add_user_message(blocks)

    def _add_assistant(self, item: MessageWithParts) -> None:
        texts: list[str] = []
        finished: list[ToolPart] = []
        for part in item.parts:
            if isinstance(part, TextPart):
                if not part.ignored:
                    texts.append(part.text)
            elif isinstance(part, ToolPart):
                if part.settled:
                    finished.append(part)
            elif not isinstance(part, (FilePart, ReasoningPart)):
                raise TypeError(f"Unexpected part type: {type(part).__name__}")

        content = "".join(texts)
        if not content and not finished:
            return
        tool_calls = [
            {
                "id": part.call_id,
                "type": "function",
                "function": {"name": part.tool, "arguments": json.dumps(part.state.input)},
            }
            for part in finished
        ]
        self.add_assistant_message(content, tool_calls)
        for part in finished:
            result = part.state.output if part.state.status == "completed" else part.state.error
            self.add_tool_result(part.call_id, part.tool, result or "(no output)")


def to_model_messages(messages: Iterable[MessageWithParts]) -> list[dict[str, Any]]:
    """Project stored messages (chronological order) onto model-facing turns.

    Pending and running tool parts belong to the round in flight and are never
    surfaced. Reasoning parts are not replayed.
    """
    history = MessageHistory()
    for item in messages:
        history.add(item)
    return history.messages
