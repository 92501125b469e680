from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import unquote, urlparse

from common import llm
from common.cancel import CancellationToken
from common.events import (
    ErrorEvent,
    Event,
    EventEmitter,
    StepFinishEvent,
    StepStartEvent,
    TextChunkEvent,
    ToolCallUpdateEvent,
)

from bellows import permission
from bellows.agents import AgentConfig, AgentRegistry
from bellows.config import BellowsConfig, ModelNotSelectedError, resolve_model_alias
from bellows.errors import AgentNotFoundError, NotFoundError
from bellows.files import FileError, FileManager
from bellows.llm.provider import ProviderManager
from bellows.llm.stream import StreamClient, StreamInput
from bellows.session.history import to_model_messages
from bellows.session.manager import SessionManager
from bellows.session.message import (
    AssistantMessage,
    FilePartInput,
    MessageOutputLengthError,
    MessageWithParts,
    ModelRef,
    PartInput,
    TextPartInput,
    UserMessage,
    part_input_adapter,
)
from bellows.session.processor import STOP, StreamProcessor
from bellows.session.store import MessageStore
from bellows.session.system import load_prompt
from bellows.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


class SessionPrompt:
    """The agent loop: one user input in, one or more model rounds out.

    Collaborators are injected so that each process (or test) builds its own
    store, tool registry, provider manager and agent registry.
    """

    def __init__(
        self,
        store: MessageStore,
        tools: ToolRegistry,
        providers: ProviderManager,
        agents: AgentRegistry | None = None,
        config: BellowsConfig | None = None,
        stream_client: StreamClient | None = None,
        completion_fn: Callable[..., Any] = llm.completion,
        root_path: str | Path = ".",
        ask: permission.AskFn | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.store = store
        self.tools = tools
        self.providers = providers
        if agents is None:
            agents = AgentRegistry(root_path)
            agents.reload()
        self.agents = agents
        self.config = config or BellowsConfig()
        self.root_path = Path(root_path)
        self.client = stream_client or StreamClient(
            providers,
            tools,
            completion_fn=completion_fn,
            root_path=root_path,
            output_token_max=self.config.output_token_max,
        )
        self.sessions = SessionManager(store)
        self.ask = ask
        self.emitter = emitter or EventEmitter()

    def prompt(
        self,
        session_id: str,
        parts: Sequence[PartInput | dict | str],
        model: str | ModelRef | None = None,
        agent: str | None = None,
        system: str | None = None,
        on_text_chunk: Callable[[TextChunkEvent], None] | None = None,
        on_tool_call_update: Callable[[ToolCallUpdateEvent], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> MessageWithParts:
        session = self.sessions.get_session(session_id)
        agent_config = self.agents.get(agent or session.agent or self.config.default_agent)
        model_ref = self._resolve_model(session_id, model, agent_config, session.model)
        model_info = self.providers.get_model(model_ref)
        cancel = cancel or CancellationToken()

        inputs = self._expand_parts(parts)
        user = self.store.create_user_message(
            session_id, inputs, agent=agent_config.name, model=model_ref, system=system
        )
        if session.title is None:
            session = self.sessions.rename(session_id, self._title_from(inputs))

        emitter = self._round_emitter(on_text_chunk, on_tool_call_update)
        processor = StreamProcessor(
            self.store, self.tools, emitter=emitter, ask=self.ask, cancel=cancel
        )
        max_steps = agent_config.steps or self.config.max_steps
        logger.info(
            f"Prompt session={session_id} agent={agent_config.name} "
            f"model={model_ref} max_steps={max_steps}"
        )

        step = 0
        last_assistant: AssistantMessage | None = None
        while step < max_steps:
            if cancel.cancelled:
                logger.info(f"Session {session_id} cancelled before step {step + 1}")
                break
            step += 1
            self._insert_reminders(session_id, agent_config, step, max_steps)

            history = list(self.store.stream_messages(session_id))
            history.reverse()
            last_user = self._last_user(history) or user
            messages = to_model_messages(history)

            assistant = self.store.create_assistant_message(
                session_id, last_user.info.id, model_ref, agent_config.name
            )
            last_assistant = assistant
            emitter.emit(StepStartEvent(session_id=session_id, message_id=assistant.id, step=step))
            logger.info(f"Session {session_id} step {step}/{max_steps}")

            if step > 1:
                processor.reset()
            events = self.client.stream(
                StreamInput(
                    session_id=session_id,
                    user=last_user.info,
                    model=model_info,
                    agent=agent_config,
                    messages=messages,
                    cancel=cancel,
                )
            )
            result = processor.process(assistant, events, agent_config)
            emitter.emit(
                StepFinishEvent(
                    session_id=session_id,
                    message_id=assistant.id,
                    step=step,
                    finish=result.finish,
                    verdict=result.verdict,
                    cost=result.message.cost,
                )
            )

            if result.error is not None and not isinstance(result.error, MessageOutputLengthError):
                emitter.emit(
                    ErrorEvent(
                        message=result.error.message,
                        source=result.error.name,
                        session_id=session_id,
                    )
                )
                break
            if result.verdict == STOP:
                break
            if step == max_steps:
                logger.info(f"Session {session_id} reached max steps ({max_steps})")

        self.sessions.touch(session_id)
        if last_assistant is not None:
            final = self.store.get_message_with_parts(last_assistant.id)
        else:
            final = self.store.get_message_with_parts(user.info.id)
        if final is None:
            raise NotFoundError(f"Message disappeared during prompt in session {session_id}")
        logger.info(f"Prompt finished for session {session_id} after {step} step(s)")
        return final

    def _resolve_model(
        self,
        session_id: str,
        model: str | ModelRef | None,
        agent: AgentConfig,
        session_model: ModelRef | None,
    ) -> ModelRef:
        if isinstance(model, ModelRef):
            return model
        if model:
            return ModelRef.parse(resolve_model_alias(model))
        if agent.model:
            return ModelRef.parse(resolve_model_alias(agent.model))
        if session_model is not None:
            return session_model
        default = self.config.default_model()
        if default:
            return ModelRef.parse(default)
        raise ModelNotSelectedError(session_id)

    def _round_emitter(
        self,
        on_text_chunk: Callable[[TextChunkEvent], None] | None,
        on_tool_call_update: Callable[[ToolCallUpdateEvent], None] | None,
    ) -> EventEmitter:
        emitter = EventEmitter(self.emitter.emit)

        def dispatch(event: Event) -> None:
            if on_text_chunk is not None and isinstance(event, TextChunkEvent):
                on_text_chunk(event)
            elif on_tool_call_update is not None and isinstance(event, ToolCallUpdateEvent):
                on_tool_call_update(event)

        if on_text_chunk is not None or on_tool_call_update is not None:
            emitter.subscribe(dispatch)
        return emitter

    def _expand_parts(self, parts: Sequence[PartInput | dict | str]) -> list[PartInput]:
        inputs: list[PartInput] = []
        for part in parts:
            if isinstance(part, str):
                item: PartInput = TextPartInput(text=part)
            elif isinstance(part, dict):
                item = part_input_adapter.validate_python(part)
            else:
                item = part
            inputs.append(item)
            if isinstance(item, FilePartInput):
                inputs.extend(self._file_context(item))
        return inputs

    def _file_context(self, part: FilePartInput) -> list[PartInput]:
        url = urlparse(part.url)
        if url.scheme != "file" or not part.mime.startswith("text/"):
            return []
        path = unquote(url.path)
        try:
            content = FileManager(self.root_path).read_file(path)
        except FileError as e:
            logger.warning(f"Could not attach {path}: {e}")
            return [TextPartInput(text=f"Could not read {path}: {e}", synthetic=True)]
        return [
            TextPartInput(
                text=f'<file path="{path}">\n{content}\n</file>',
                synthetic=True,
            )
        ]

    @staticmethod
    def _title_from(inputs: list[PartInput]) -> str:
        for item in inputs:
            if isinstance(item, TextPartInput) and not item.synthetic and item.text.strip():
                first_line = item.text.strip().splitlines()[0]
                return first_line[:TITLE_LENGTH]
        return "New session"

    @staticmethod
    def _last_user(history: list[MessageWithParts]) -> MessageWithParts | None:
        for item in reversed(history):
            if isinstance(item.info, UserMessage):
                return item
        return None

    def _was_planning(self, agent_name: str) -> bool:
        try:
            return self.agents.get(agent_name).planning
        except AgentNotFoundError:
            return agent_name == "plan"

    def _insert_reminders(
        self, session_id: str, agent: AgentConfig, step: int, max_steps: int
    ) -> None:
        last_user = self.store.get_last_message(session_id, role="user")
        if last_user is None:
            return
        reminders = []
        if agent.planning:
            reminders.append("plan")
        else:
            previous = self.store.get_last_message(session_id, role="assistant")
            if previous is not None and self._was_planning(previous.agent):
                reminders.append("build-switch")
        if step == max_steps:
            reminders.append("max-steps")
        for name in reminders:
            self.store.add_part(
                last_user.id, {"type": "text", "text": load_prompt(name), "synthetic": True}
            )
            logger.debug(f"Added {name} reminder to message {last_user.id}")
