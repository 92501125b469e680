from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator

import litellm

from common import llm
from common.cancel import CancellationToken
from common.ids import ascending

from bellows.llm import transform
from bellows.llm.events import (
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
from bellows.llm.provider import ModelInfo, ProviderManager
from bellows.session import system as session_system
from bellows.session.message import (
    APIError,
    MessageError,
    ProviderAuthError,
    TokenCache,
    TokenUsage,
    UnknownError,
    UserMessage,
)

if TYPE_CHECKING:
    from bellows.agents import AgentConfig
    from bellows.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

OUTPUT_TOKEN_MAX = 32_000
RETRYABLE_STATUS = frozenset({408, 409, 429})

FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "length": "length",
    "max_tokens": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "tool_use": "tool-calls",
    "content_filter": "content-filter",
}


@dataclass
class StreamInput:
    session_id: str
    user: UserMessage
    model: ModelInfo
    agent: AgentConfig
    messages: list[dict]
    tools: list[dict] | None = None
    system: list[str] = field(default_factory=list)
    cancel: CancellationToken | None = None


def map_finish_reason(reason: str | None) -> str:
    if reason is None:
        return "unknown"
    return FINISH_REASONS.get(reason, reason)


def classify_error(error: BaseException, provider_id: str) -> MessageError:
    message = str(error) or type(error).__name__
    if isinstance(error, litellm.AuthenticationError):
        return ProviderAuthError(provider_id=provider_id, message=message)
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return APIError(
            message=message,
            status_code=status,
            is_retryable=status in RETRYABLE_STATUS or status >= 500,
        )
    return UnknownError(message=message)


def _usage_from(usage: Any) -> tuple[TokenUsage, int, int]:
    if usage is None:
        return TokenUsage(), 0, 0
    prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
    completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    cache_read = int(
        getattr(usage, "cache_read_input_tokens", 0)
        or getattr(prompt_details, "cached_tokens", 0)
        or 0
    )
    cache_write = int(getattr(usage, "cache_creation_input_tokens", 0) or 0)
    reasoning = int(getattr(completion_details, "reasoning_tokens", 0) or 0)
    tokens = TokenUsage(
        input=max(prompt_tokens - cache_read - cache_write, 0),
        output=completion_tokens,
        reasoning=reasoning,
        cache=TokenCache(read=cache_read, write=cache_write),
    )
    return tokens, prompt_tokens, completion_tokens


class StreamClient:
    """Opens one streaming model call and yields typed stream events.

    Failures surface as a single trailing ``StreamError``; nothing is retried.
    """

    def __init__(
        self,
        providers: ProviderManager,
        tools: ToolRegistry,
        completion_fn: Callable[..., Any] = llm.completion,
        root_path: str | Path = ".",
        output_token_max: int = OUTPUT_TOKEN_MAX,
    ):
        self.providers = providers
        self.tools = tools
        self.completion_fn = completion_fn
        self.root_path = Path(root_path)
        self.output_token_max = output_token_max

    def system_prompt(self, input: StreamInput) -> list[str]:
        head = [input.agent.prompt] if input.agent.prompt else [
            session_system.provider_prompt(input.model.ref)
        ]
        head.extend(input.system)
        if input.user.system:
            head.append(input.user.system)
        prompts = ["\n".join(part for part in head if part)]
        prompts.append(session_system.environment(input.model.ref, self.root_path))
        prompts.extend(session_system.custom_instructions(self.root_path))
        return [p for p in prompts if p.strip()]

    def request(self, input: StreamInput) -> dict[str, Any]:
        """Keyword arguments for the completion call, with vendor quirks applied."""
        model = input.model
        agent = input.agent
        provider = self.providers.get_provider(model.provider_id)

        messages = [{"role": "system", "content": s} for s in self.system_prompt(input)]
        messages = transform.message(messages + list(input.messages), model)

        options = {
            **transform.options(model, provider),
            **model.options,
            **agent.options,
        }

        temperature = None
        if model.capabilities.temperature:
            temperature = agent.temperature
            if temperature is None:
                temperature = transform.temperature(model)
            if temperature is None:
                temperature = transform.DEFAULT_TEMPERATURE
        top_p = agent.top_p if agent.top_p is not None else transform.DEFAULT_TOP_P

        max_tokens = transform.max_output_tokens(
            model, options, agent.max_tokens or self.output_token_max
        )

        tools = input.tools
        if tools is None:
            tools = self.tools.tool_schemas(agent, model)
        if transform.needs_tool_placeholder(provider, model, tools, messages):
            logger.warning(f"Adding {transform.NOOP_TOOL_NAME} tool for {provider.id}")
            tools = [transform.NOOP_TOOL]

        return {
            "model": model.litellm_model or f"{model.provider_id}/{model.model_id}",
            "messages": messages,
            "stream": True,
            "tools": tools or None,
            "temperature": temperature,
            "top_p": top_p,
            "max_tokens": max_tokens,
            **self.providers.call_params(provider.id),
            **options,
        }

    def stream(self, input: StreamInput) -> Iterator[StreamEvent]:
        model = input.model
        cancel = input.cancel
        logger.info(
            f"Streaming {model.provider_id}/{model.model_id} "
            f"(session={input.session_id}, agent={input.agent.name})"
        )
        if cancel is not None and cancel.cancelled:
            return

        try:
            params = self.request(input)
            response = self.completion_fn(**params)
            yield from self._translate(response, model, cancel)
        except Exception as e:
            logger.error(f"Stream failed for {model.provider_id}/{model.model_id}: {e}")
            yield StreamError(error=classify_error(e, model.provider_id), exception=e)

    def _repair_tool_name(self, name: str) -> str:
        if not name or self.tools.get(name) is not None:
            return name
        lowered = name.lower()
        for tool_id in self.tools.names():
            if tool_id.lower() == lowered:
                logger.debug(f"Repaired tool name {name} -> {tool_id}")
                return tool_id
        return name

    def _translate(
        self, response: Any, model: ModelInfo, cancel: CancellationToken | None
    ) -> Iterator[StreamEvent]:
        text_open = False
        reasoning_open = False
        tool_calls: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        usage = None

        for chunk in response:
            if cancel is not None and cancel.cancelled:
                close = getattr(response, "close", None)
                if callable(close):
                    close()
                return

            chunk_usage = getattr(chunk, "usage", None)
            if chunk_usage:
                usage = chunk_usage

            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            choice = choices[0]
            delta = getattr(choice, "delta", None)

            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    if not reasoning_open:
                        reasoning_open = True
                        yield ReasoningStart()
                    yield ReasoningDelta(text=reasoning)

                content = getattr(delta, "content", None)
                if content:
                    if reasoning_open:
                        reasoning_open = False
                        yield ReasoningEnd()
                    if not text_open:
                        text_open = True
                        yield TextStart()
                    yield TextDelta(text=content)

                for tc in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tc, "index", None)
                    if index is None:
                        index = len(tool_calls)
                    entry = tool_calls.setdefault(
                        index, {"id": "", "name": "", "arguments": "", "announced": False}
                    )
                    if getattr(tc, "id", None):
                        entry["id"] = tc.id
                    function = getattr(tc, "function", None)
                    if function is not None:
                        if getattr(function, "name", None):
                            entry["name"] = function.name
                        if getattr(function, "arguments", None):
                            entry["arguments"] += function.arguments
                    if entry["id"] and entry["name"] and not entry["announced"]:
                        entry["announced"] = True
                        yield ToolInputStart(
                            call_id=entry["id"],
                            tool_name=self._repair_tool_name(entry["name"]),
                        )

            if getattr(choice, "finish_reason", None):
                finish_reason = choice.finish_reason

        if reasoning_open:
            yield ReasoningEnd()
        if text_open:
            yield TextEnd()

        for index in sorted(tool_calls):
            yield self._tool_call(tool_calls[index])

        tokens, prompt_tokens, completion_tokens = _usage_from(usage)
        cost = llm.usage_cost(model.litellm_model, prompt_tokens, completion_tokens)
        yield StepFinish(usage=tokens, finish_reason=map_finish_reason(finish_reason), cost=cost)

    def _tool_call(self, entry: dict[str, Any]) -> ToolCall:
        call_id = entry["id"] or ascending("call")
        name = self._repair_tool_name(entry["name"])
        raw = entry["arguments"]
        try:
            args = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            return ToolCall(call_id=call_id, tool_name=name, raw=raw, parse_error=str(e))
        if not isinstance(args, dict):
            return ToolCall(
                call_id=call_id,
                tool_name=name,
                raw=raw,
                parse_error=f"expected a JSON object, got {type(args).__name__}",
            )
        return ToolCall(call_id=call_id, tool_name=name, args=args, raw=raw)
