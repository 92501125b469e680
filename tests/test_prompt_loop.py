import pytest

import fakes
from common.cancel import CancellationToken
from common.events import ErrorEvent, StepFinishEvent, StepStartEvent, TextChunkEvent

from bellows.agents import AgentConfig
from bellows.config import ModelNotSelectedError
from bellows.errors import NotFoundError
from bellows.session.message import (
    APIError,
    AssistantMessage,
    FilePartInput,
    MessageAbortedError,
    TextPart,
    ToolPart,
    UserMessage,
)
from bellows.session.prompt import SessionPrompt
from bellows.session.system import load_prompt
from bellows.tools import ToolResult, define_tool


def _runner(store, tools, providers, agents, config, completion, tmp_path, **kwargs):
    return SessionPrompt(
        store,
        tools,
        providers,
        agents=agents,
        config=config,
        completion_fn=completion,
        root_path=tmp_path,
        **kwargs,
    )


@pytest.fixture
def make_runner(store, tools, providers, agents, config, tmp_path):
    def make(completion, **kwargs):
        return _runner(store, tools, providers, agents, config, completion, tmp_path, **kwargs)

    return make


def _history(store, session_id):
    return list(reversed(list(store.stream_messages(session_id))))


def _assistants(store, session_id):
    return [m for m in _history(store, session_id) if isinstance(m.info, AssistantMessage)]


def _tool_results(call):
    return [m for m in call["messages"] if m["role"] == "tool"]


class TestScenarios:
    def test_single_turn_without_tools(self, make_runner, store, session):
        completion = fakes.ScriptedCompletion(fakes.text_round("It prints ", "hello."))
        final = make_runner(completion).prompt(session.id, ["explain this code"])

        assert isinstance(final.info, AssistantMessage)
        assert final.info.finish == "stop"
        assert final.info.error is None
        assert len(completion.calls) == 1

        assistants = _assistants(store, session.id)
        assert len(assistants) == 1
        text_parts = [p for p in assistants[0].parts if isinstance(p, TextPart)]
        assert len(text_parts) == 1
        assert text_parts[0].text == "It prints hello."
        assert text_parts[0].time.end is not None

    @pytest.mark.parametrize("finish_reason", [None, "stop"])
    def test_one_tool_round(self, make_runner, store, session, finish_reason):
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "read", '{"file_path": "x.py"}', reason=finish_reason),
            fakes.text_round("It prints hello."),
        )
        final = make_runner(completion).prompt(session.id, ["read file x.py"])

        assert len(completion.calls) == 2
        results = _tool_results(completion.calls[1])
        assert len(results) == 1
        assert results[0]["tool_call_id"] == "call_1"
        assert results[0]["content"] == "print('hello')\n"
        assistant_turn = next(
            m for m in completion.calls[1]["messages"] if m["role"] == "assistant"
        )
        assert assistant_turn["tool_calls"][0]["id"] == "call_1"

        assert final.info.finish == "stop"
        assistants = _assistants(store, session.id)
        assert len(assistants) == 2
        tool_part = assistants[0].parts[0]
        assert isinstance(tool_part, ToolPart)
        assert tool_part.state.status == "completed"

    def test_final_step_reminder(self, make_runner, store, session, config):
        config.max_steps = 1
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "read", '{"file_path": "x.py"}'),
            fakes.tool_round("call_2", "read", '{"file_path": "x.py"}'),
        )
        final = make_runner(completion).prompt(session.id, ["keep reading"])

        assert len(completion.calls) == 1
        user = _history(store, session.id)[0]
        reminders = [p for p in user.parts if isinstance(p, TextPart) and p.synthetic]
        assert [p.text for p in reminders] == [load_prompt("max-steps")]

        sent_user = completion.calls[0]["messages"][-1]
        assert sent_user["role"] == "user"
        assert sent_user["content"][-1]["text"] == load_prompt("max-steps")
        assert isinstance(final.info, AssistantMessage)

    def test_tool_error_is_reported_to_model(self, make_runner, store, session):
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "read", '{"file_path": "missing.py"}'),
            fakes.text_round("That file does not exist."),
        )
        final = make_runner(completion).prompt(session.id, ["read missing.py"])

        assert len(completion.calls) == 2
        results = _tool_results(completion.calls[1])
        assert results[0]["content"] == "file not found: missing.py"

        tool_part = _assistants(store, session.id)[0].parts[0]
        assert tool_part.state.status == "error"
        assert tool_part.state.error == "file not found: missing.py"
        assert final.info.error is None
        assert final.info.finish == "stop"

    def test_mid_stream_cancellation(self, make_runner, store, session):
        cancel = CancellationToken()

        def interrupted():
            yield fakes.text("Let me ")
            cancel.cancel("Cancelled by user")
            yield fakes.text("explain")
            yield fakes.finish()

        completion = fakes.ScriptedCompletion(interrupted, fakes.text_round("unused"))
        final = make_runner(completion).prompt(session.id, ["explain"], cancel=cancel)

        assert len(completion.calls) == 1
        assert isinstance(final.info.error, MessageAbortedError)
        assert final.info.settled
        text_parts = [p for p in final.parts if isinstance(p, TextPart)]
        assert text_parts[0].text == "Let me "
        stored = store.get_parts(final.info.id)
        assert stored[0].text == "Let me "

    def test_cancellation_inside_tool(self, make_runner, store, session, tools):
        cancel = CancellationToken()

        def long_task(args, ctx):
            ctx.cancel.cancel("Cancelled by user")
            ctx.cancel.raise_if_cancelled()
            return "unreachable"

        tools.register(define_tool("long_task", "Runs for a while", {"type": "object"}, long_task))
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "long_task", "{}"), fakes.text_round("unused")
        )
        final = make_runner(completion).prompt(session.id, ["start the task"], cancel=cancel)

        assert len(completion.calls) == 1
        assert isinstance(final.info.error, MessageAbortedError)
        assert final.info.settled
        tool_part = _assistants(store, session.id)[0].parts[0]
        assert isinstance(tool_part, ToolPart)
        assert tool_part.state.status == "error"
        assert tool_part.state.error == "Cancelled by user"

    def test_empty_tool_output_is_placeholder(self, make_runner, session, tools):
        tools.register(
            define_tool(
                "noop", "Does nothing", {"type": "object"}, lambda args, ctx: ToolResult(output="")
            )
        )
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "noop", "{}"), fakes.text_round("Done.")
        )
        make_runner(completion).prompt(session.id, ["run noop"])

        assert completion.calls[1]["model"] == "openai/test-model"
        results = _tool_results(completion.calls[1])
        assert results[0]["tool_call_id"] == "call_1"
        assert results[0]["content"] == "(no output)"


class TestLoopPolicy:
    def test_termination_bound(self, make_runner, session, config):
        config.max_steps = 3
        completion = fakes.ScriptedCompletion(
            *[fakes.tool_round(f"call_{i}", "read", '{"file_path": "x.py"}') for i in range(3)]
        )
        make_runner(completion).prompt(session.id, ["loop forever"])
        assert len(completion.calls) == 3

    def test_agent_steps_override_config(self, make_runner, agents, session):
        agents.register(AgentConfig(name="quick", steps=2))
        completion = fakes.ScriptedCompletion(
            *[fakes.tool_round(f"call_{i}", "read", '{"file_path": "x.py"}') for i in range(2)]
        )
        make_runner(completion).prompt(session.id, ["go"], agent="quick")
        assert len(completion.calls) == 2

    def test_stream_error_stops_without_retry(self, make_runner, session):
        events = []
        completion = fakes.ScriptedCompletion(
            fakes.StatusError("overloaded", 529), fakes.text_round("unused")
        )
        runner = make_runner(completion)
        runner.emitter.subscribe(events.append)
        final = runner.prompt(session.id, ["hello"])

        assert len(completion.calls) == 1
        assert isinstance(final.info.error, APIError)
        assert final.info.error.is_retryable
        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert errors[0].source == "APIError"

    def test_length_finish_stops(self, make_runner, session):
        completion = fakes.ScriptedCompletion(fakes.text_round("truncat", reason="length"))
        final = make_runner(completion).prompt(session.id, ["write a novel"])
        assert len(completion.calls) == 1
        assert final.info.error.name == "MessageOutputLengthError"


class TestPromptInputs:
    def test_callbacks_are_additive(self, make_runner, store, session):
        chunks = []
        tool_updates = []
        completion = fakes.ScriptedCompletion(
            fakes.tool_round("call_1", "read", '{"file_path": "x.py"}'),
            fakes.text_round("Done", "!"),
        )
        make_runner(completion).prompt(
            session.id,
            ["read x.py"],
            on_text_chunk=chunks.append,
            on_tool_call_update=tool_updates.append,
        )

        assert [c.text for c in chunks] == ["Done", "!"]
        assert all(isinstance(c, TextChunkEvent) for c in chunks)
        assert [u.status for u in tool_updates] == ["pending", "running", "completed"]
        assert len(_assistants(store, session.id)) == 2

    def test_step_events(self, make_runner, session):
        events = []
        completion = fakes.ScriptedCompletion(fakes.text_round("hi"))
        runner = make_runner(completion)
        runner.emitter.subscribe(events.append)
        runner.prompt(session.id, ["hello"])

        starts = [e for e in events if isinstance(e, StepStartEvent)]
        finishes = [e for e in events if isinstance(e, StepFinishEvent)]
        assert [e.step for e in starts] == [1]
        assert finishes[0].verdict == "stop"

    def test_unknown_session(self, make_runner):
        with pytest.raises(NotFoundError):
            make_runner(fakes.ScriptedCompletion()).prompt("ses_missing", ["hi"])

    def test_no_model_selected(self, make_runner, sessions):
        bare = sessions.create_session()
        with pytest.raises(ModelNotSelectedError):
            make_runner(fakes.ScriptedCompletion()).prompt(bare.id, ["hi"])

    def test_explicit_model_wins(self, make_runner, session):
        completion = fakes.ScriptedCompletion(fakes.text_round("hi"))
        final = make_runner(completion).prompt(session.id, ["hi"], model="anthropic/claude-test")
        assert completion.calls[0]["model"] == "anthropic/claude-test"
        assert final.info.provider_id == "anthropic"

    def test_title_from_first_message(self, make_runner, sessions):
        untitled = sessions.create_session(model="openai/test-model")
        completion = fakes.ScriptedCompletion(fakes.text_round("hi"))
        make_runner(completion).prompt(untitled.id, ["Fix the failing login test\nmore detail"])
        assert sessions.get_session(untitled.id).title == "Fix the failing login test"

    def test_text_file_is_inlined(self, make_runner, store, session, tmp_path):
        source = tmp_path / "notes.txt"
        source.write_text("remember the milk", encoding="utf-8")
        completion = fakes.ScriptedCompletion(fakes.text_round("ok"))
        make_runner(completion).prompt(
            session.id,
            [
                "summarize",
                FilePartInput(mime="text/plain", url=source.as_uri(), filename="notes.txt"),
            ],
        )

        user = _history(store, session.id)[0]
        assert isinstance(user.info, UserMessage)
        inlined = [p for p in user.parts if isinstance(p, TextPart) and p.synthetic]
        assert "remember the milk" in inlined[0].text

    def test_plan_agent_reminders(self, make_runner, store, session):
        completion = fakes.ScriptedCompletion(fakes.text_round("Plan: ..."), fakes.text_round("Built."))
        runner = make_runner(completion)

        runner.prompt(session.id, ["plan the change"], agent="plan")
        plan_user = _history(store, session.id)[0]
        assert any(p.synthetic and p.text == load_prompt("plan") for p in plan_user.parts)

        runner.prompt(session.id, ["now build it"], agent="build")
        build_user = _history(store, session.id)[2]
        assert any(p.synthetic and p.text == load_prompt("build-switch") for p in build_user.parts)

    def test_default_registry_loads_custom_agents(self, store, tools, providers, config, tmp_path):
        agents_dir = tmp_path / ".bellows" / "agents"
        agents_dir.mkdir(parents=True)
        (agents_dir / "reviewer.md").write_text(
            "---\nsteps: 1\n---\nReview the change.\n", encoding="utf-8"
        )
        runner = SessionPrompt(store, tools, providers, config=config, root_path=tmp_path)

        assert runner.agents.get("reviewer").prompt == "Review the change."
        assert runner.agents.get("reviewer").steps == 1
