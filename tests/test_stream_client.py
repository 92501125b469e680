import litellm
import pytest

import fakes
from common.cancel import CancellationToken

from bellows.agents import BUILTIN_AGENTS, AgentConfig
from bellows.llm.events import (
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepFinish,
    StreamError,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    ToolInputStart,
)
from bellows.llm.stream import StreamClient, StreamInput, classify_error, map_finish_reason
from bellows.session.message import APIError, ModelRef, ProviderAuthError, UnknownError, UserMessage


@pytest.fixture
def user(model_ref):
    return UserMessage(id="msg_1", session_id="ses_1", agent="build", model=model_ref)


def _client(providers, tools, completion, tmp_path):
    return StreamClient(providers, tools, completion_fn=completion, root_path=tmp_path)


def _input(providers, user, agent=None, cancel=None, model="openai/test-model"):
    return StreamInput(
        session_id="ses_1",
        user=user,
        model=providers.get_model(ModelRef.parse(model)),
        agent=agent or BUILTIN_AGENTS["build"],
        messages=[{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        cancel=cancel,
    )


class TestTranslation:
    def test_text_stream(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(fakes.text_round("Hel", "lo"))
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))

        assert [type(e) for e in events] == [TextStart, TextDelta, TextDelta, TextEnd, StepFinish]
        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Hello"
        finish = events[-1]
        assert finish.finish_reason == "stop"
        assert finish.usage.input == 12
        assert finish.usage.output == 7

    def test_reasoning_precedes_text(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(
            [fakes.reasoning("think"), fakes.text("answer"), fakes.finish()]
        )
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))
        assert [type(e) for e in events] == [
            ReasoningStart,
            ReasoningDelta,
            ReasoningEnd,
            TextStart,
            TextDelta,
            TextEnd,
            StepFinish,
        ]

    def test_tool_call_accumulates_arguments(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(
            [
                fakes.tool_call(0, call_id="call_1", name="read"),
                fakes.tool_call(0, arguments='{"file_'),
                fakes.tool_call(0, arguments='path": "x.py"}'),
                fakes.finish("tool_calls"),
            ]
        )
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))

        starts = [e for e in events if isinstance(e, ToolInputStart)]
        calls = [e for e in events if isinstance(e, ToolCall)]
        assert starts == [ToolInputStart(call_id="call_1", tool_name="read")]
        assert len(calls) == 1
        assert calls[0].args == {"file_path": "x.py"}
        assert calls[0].parse_error is None
        assert events[-1].finish_reason == "tool-calls"

    def test_parallel_tool_calls_keep_index_order(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(
            [
                fakes.tool_call(1, call_id="call_b", name="read", arguments='{"file_path": "b"}'),
                fakes.tool_call(0, call_id="call_a", name="read", arguments='{"file_path": "a"}'),
                fakes.finish("tool_calls"),
            ]
        )
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))
        assert [e.call_id for e in events if isinstance(e, ToolCall)] == ["call_a", "call_b"]

    def test_tool_name_is_repaired(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(fakes.tool_round("call_1", "READ", "{}"))
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))
        assert [e.tool_name for e in events if isinstance(e, ToolCall)] == ["read"]

    def test_invalid_arguments(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(fakes.tool_round("call_1", "read", "{not json"))
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))
        call = next(e for e in events if isinstance(e, ToolCall))
        assert call.parse_error
        assert call.raw == "{not json"


class TestErrors:
    def test_transport_error_becomes_single_stream_error(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion(fakes.StatusError("rate limited", 429))
        events = list(_client(providers, tools, completion, tmp_path).stream(_input(providers, user)))

        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert isinstance(events[0].error, APIError)
        assert events[0].error.status_code == 429
        assert events[0].error.is_retryable

    def test_classify_errors(self):
        auth = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4o")
        assert isinstance(classify_error(auth, "openai"), ProviderAuthError)

        bad_request = classify_error(fakes.StatusError("bad", 400), "openai")
        assert isinstance(bad_request, APIError)
        assert not bad_request.is_retryable
        assert classify_error(fakes.StatusError("down", 503), "openai").is_retryable

        assert isinstance(classify_error(ConnectionError("reset"), "openai"), UnknownError)

    def test_map_finish_reason(self):
        assert map_finish_reason("end_turn") == "stop"
        assert map_finish_reason("max_tokens") == "length"
        assert map_finish_reason("tool_use") == "tool-calls"
        assert map_finish_reason(None) == "unknown"
        assert map_finish_reason("weird") == "weird"


class TestCancellation:
    def test_cancelled_before_start(self, providers, tools, user, tmp_path):
        completion = fakes.ScriptedCompletion()
        cancel = CancellationToken()
        cancel.cancel()
        events = list(
            _client(providers, tools, completion, tmp_path).stream(_input(providers, user, cancel=cancel))
        )
        assert events == []
        assert completion.calls == []

    def test_cancelled_mid_stream(self, providers, tools, user, tmp_path):
        cancel = CancellationToken()

        def chunks():
            yield fakes.text("partial")
            cancel.cancel("user")
            yield fakes.text(" more")
            yield fakes.finish()

        completion = fakes.ScriptedCompletion(chunks)
        events = list(
            _client(providers, tools, completion, tmp_path).stream(_input(providers, user, cancel=cancel))
        )
        assert [type(e) for e in events] == [TextStart, TextDelta]


class TestRequest:
    def test_request_shape(self, providers, tools, user, tmp_path):
        client = _client(providers, tools, fakes.ScriptedCompletion(), tmp_path)
        params = client.request(_input(providers, user))

        assert params["model"] == "openai/test-model"
        assert params["stream"] is True
        assert params["temperature"] == 0.6
        assert params["top_p"] == 0.9
        assert params["max_tokens"] == 32_000
        assert params["messages"][0]["role"] == "system"
        assert params["messages"][-1]["role"] == "user"
        assert [t["function"]["name"] for t in params["tools"]] == ["read"]

    def test_agent_overrides(self, providers, tools, user, tmp_path):
        agent = AgentConfig(
            name="custom",
            prompt="You are terse.",
            temperature=0.1,
            max_tokens=1000,
            permission={"*": "allow", "read": "deny"},
        )
        client = _client(providers, tools, fakes.ScriptedCompletion(), tmp_path)
        params = client.request(_input(providers, user, agent=agent))

        assert params["temperature"] == 0.1
        assert params["max_tokens"] == 1000
        assert params["messages"][0]["content"].startswith("You are terse.")
        assert params["tools"] is None

    def test_project_instructions_included(self, providers, tools, user, tmp_path):
        (tmp_path / "BELLOWS.md").write_text("Always run the tests.", encoding="utf-8")
        client = _client(providers, tools, fakes.ScriptedCompletion(), tmp_path)
        system = client.system_prompt(_input(providers, user))
        assert any("Always run the tests." in s for s in system)
        assert any("test-model" in s for s in system)
