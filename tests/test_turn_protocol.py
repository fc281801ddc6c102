"""Tests for relay.services.turn_protocol -- one turn, exactly one terminal action.

Streams are scripted as Anthropic-format chunks, one list per step; the
turn log is an AsyncMock so every persistence call can be asserted.
"""

import asyncio
import json
import uuid
from unittest.mock import AsyncMock, call

import pytest

from relay.errors import BadRequestError, ProtocolViolation
from relay.services.tool_dispatcher import ToolDispatcher
from relay.services.tools import register_builtin_tools
from relay.services.turn_protocol import (
    TerminalAction,
    TurnDecision,
    TurnProtocolEnforcer,
    TurnState,
)
from relay.streaming import default_provider_registry
from relay_ide.registry import Registry
from relay_ide.workspace import WorkspacePool
from tests.conftest import SESSION_ID, TURN_ID


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


SESSION = {"id": SESSION_ID, "provider": "anthropic", "context_type": "build", "context_id": "b-1"}


def _start(input_tokens: int = 10) -> dict:
    return {"type": "message_start", "message": {"id": "m", "model": "claude-x", "usage": {"input_tokens": input_tokens}}}


def _text(text: str) -> dict:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


def _thinking(text: str) -> dict:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": text}}


def _tool(index: int, name: str, args: dict | None = None, *, raw: str | None = None) -> list[dict]:
    partial = raw if raw is not None else json.dumps(args or {})
    return [
        {"type": "content_block_start", "index": index, "content_block": {"type": "tool_use", "id": f"toolu_{index}", "name": name}},
        {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": partial}},
        {"type": "content_block_stop", "index": index},
    ]


def _stop() -> list[dict]:
    return [
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}},
        {"type": "message_stop"},
    ]


def _step(*parts) -> list[dict]:
    chunks = [_start()]
    for part in parts:
        chunks.extend(part if isinstance(part, list) else [part])
    chunks.extend(_stop())
    return chunks


def _script(*steps):
    """Stream factory replaying *steps*; records each StepRequest."""
    requests = []

    async def factory(request):
        requests.append(request)
        for chunk in steps[request.step]:
            yield chunk

    factory.requests = requests
    return factory


@pytest.fixture
def turn_log() -> AsyncMock:
    log = AsyncMock()
    log.begin_turn.return_value = {"id": TURN_ID, "turn_index": 0}
    log.start_tool.side_effect = lambda *a, **kw: {"id": uuid.uuid4()}
    log.create_questions.side_effect = lambda sid, tid, qs: [
        {"id": uuid.uuid4(), "question_index": i, **q} for i, q in enumerate(qs)
    ]
    return log


@pytest.fixture
def enforcer(turn_log) -> TurnProtocolEnforcer:
    dispatcher = ToolDispatcher(register_builtin_tools(Registry()), WorkspacePool())
    return TurnProtocolEnforcer(default_provider_registry(), dispatcher, turn_log)


async def _run(enforcer, factory, workspace_dir, **kw):
    return await enforcer.run_turn(SESSION, "Plan the work", factory, root=str(workspace_dir), **kw)


# ---------------------------------------------------------------------------
# Exactly one terminal action
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_finalize_completes_turn_and_session(enforcer, turn_log, workspace_dir):
    factory = _script(_step(_text("Done."), _tool(1, "submit_plan", {"plan": "ship"})))

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.DECIDED
    assert outcome.finalized
    assert outcome.terminal_tool == "submit_plan"
    assert outcome.payload == {"plan": "ship"}
    assert outcome.text == "Done."
    turn_log.append_message.assert_any_await(TURN_ID, 0, "Done.")
    turn_log.complete_turn.assert_awaited_once()
    turn_log.complete_session.assert_awaited_once_with(SESSION_ID, end_reason="finalized")
    turn_log.fail_turn.assert_not_awaited()
    assert factory.requests[0].user_message == "Plan the work"


@pytest.mark.asyncio
async def test_tool_results_feed_the_next_step(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(_text("Reading."), _tool(1, "read_file", {"path": "src/util.py"})),
        _step(_tool(1, "submit_plan", {"plan": "x"})),
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.DECIDED
    assert [c.name for c in outcome.tool_calls] == ["read_file", "submit_plan"]
    second = factory.requests[1]
    assert second.step == 1
    assert second.user_message == ""
    assert second.tool_results[0].success
    assert "def add" in second.tool_results[0].output
    assert outcome.usage.input_tokens == 20
    assert outcome.usage.output_tokens == 6
    # Tool indexes keep counting across steps
    indexes = [c.args[1] for c in turn_log.start_tool.await_args_list]
    assert indexes == [0, 1]


@pytest.mark.asyncio
async def test_ask_questions_checkpoints(enforcer, turn_log, workspace_dir):
    questions = [{"type": "single_select", "prompt": "DB?", "options": ["pg", "sqlite"]}]
    factory = _script(_step(_tool(1, "ask_questions", {"questions": questions})))

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.action is TerminalAction.CHECKPOINT
    assert outcome.needs_input
    assert outcome.questions[0]["prompt"] == "DB?"
    turn_log.create_questions.assert_awaited_once_with(SESSION_ID, TURN_ID, questions)
    turn_log.complete_turn.assert_awaited_once()
    turn_log.complete_session.assert_not_awaited()


@pytest.mark.asyncio
async def test_request_extension_saves_note(enforcer, turn_log, workspace_dir):
    factory = _script(_step(_tool(1, "request_extension", {"note": "halfway through phase 2"})))

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.action is TerminalAction.CHECKPOINT
    assert not outcome.needs_input
    turn_log.add_note.assert_awaited_once_with(SESSION_ID, "halfway through phase 2")
    turn_log.create_questions.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_questions_are_a_failed_tool_call(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(_tool(1, "ask_questions", {"questions": []})),
        _step(_tool(1, "request_extension", {})),
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    first = factory.requests[1].tool_results[0]
    assert not first.success
    assert "non-empty 'questions'" in first.output
    assert outcome.terminal_tool == "request_extension"


@pytest.mark.asyncio
async def test_no_terminal_action_is_a_violation(enforcer, turn_log, workspace_dir):
    factory = _script(_step(_text("I think we're done here.")))

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.FAILED
    assert isinstance(outcome.violation, ProtocolViolation)
    assert outcome.violation.terminal_tools == []
    turn_log.fail_turn.assert_awaited_once_with(
        TURN_ID, "protocol violation: turn ended without a terminal action"
    )
    turn_log.complete_turn.assert_not_awaited()


@pytest.mark.asyncio
async def test_two_terminal_actions_is_a_violation(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(_tool(1, "submit_plan", {"plan": "a"}), _tool(2, "complete_review", {}))
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.FAILED
    assert outcome.violation.terminal_tools == ["submit_plan", "complete_review"]
    turn_log.reject_tool.assert_awaited_once()
    rejected = turn_log.reject_tool.await_args
    assert rejected.args[2] == "complete_review"
    assert "only one terminal action" in rejected.args[4]
    turn_log.complete_turn.assert_not_awaited()
    turn_log.complete_session.assert_not_awaited()


@pytest.mark.asyncio
async def test_tool_after_decision_is_rejected(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(
            _tool(1, "submit_plan", {"plan": "a"}),
            _tool(2, "write_file", {"path": "late.txt", "content": "x"}),
        )
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.DECIDED
    assert not (workspace_dir / "late.txt").exists()
    rejected = turn_log.reject_tool.await_args
    assert rejected.args[1:3] == (1, "write_file")
    assert "write_file was not executed" in rejected.args[4]
    assert outcome.tool_calls[-1].success is False


@pytest.mark.asyncio
async def test_unparseable_arguments_fail_the_call(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(_tool(1, "read_file", raw='{"path": ')),
        _step(_tool(1, "submit_plan", {})),
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    bad = outcome.tool_calls[0]
    assert not bad.success
    assert "not valid JSON" in bad.output
    assert bad.input == {"_raw": '{"path": '}
    assert outcome.state is TurnState.DECIDED


def _openai(delta: dict | None = None, finish: str | None = None) -> dict:
    return {"id": "c", "model": "gpt-x", "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish}]}


def _openai_call(call_id: str, name: str, arguments: str) -> dict:
    return _openai({"tool_calls": [{"index": 0, "id": call_id, "function": {"name": name, "arguments": arguments}}]})


@pytest.mark.asyncio
async def test_truncated_call_is_recorded_as_failed(enforcer, turn_log, workspace_dir):
    factory = _script(
        [
            _openai_call("call_w", "write_file", '{"path": "new.py", '),
            _openai({"tool_calls": [{"index": 0, "function": {"arguments": '"content": "x = '}}]}),
            "data: [DONE]",
        ],
        [_openai_call("call_p", "submit_plan", '{"plan": "retry"}'), _openai(finish="tool_calls")],
    )
    session = {**SESSION, "provider": "openai"}

    outcome = await enforcer.run_turn(session, "Write it", factory, root=str(workspace_dir))

    truncated = outcome.tool_calls[0]
    assert truncated.name == "write_file"
    assert not truncated.success
    assert "ended before the arguments for write_file were complete" in truncated.output
    assert truncated.input == {"_raw": '{"path": "new.py", "content": "x = '}
    assert not (workspace_dir / "new.py").exists()
    assert turn_log.start_tool.await_args_list[0].args[2] == "write_file"
    failed = turn_log.finish_tool.await_args_list[0].args[1]
    assert not failed.success
    assert factory.requests[1].tool_results[0].tool_call_id == "call_w"
    assert outcome.state is TurnState.DECIDED


@pytest.mark.asyncio
async def test_step_limit(turn_log, workspace_dir):
    dispatcher = ToolDispatcher(register_builtin_tools(Registry()), WorkspacePool())
    enforcer = TurnProtocolEnforcer(default_provider_registry(), dispatcher, turn_log, max_steps=2)
    loop_step = _step(_tool(1, "list_directory", {}))
    factory = _script(loop_step, loop_step, loop_step)

    outcome = await _run(enforcer, factory, workspace_dir)

    assert len(factory.requests) == 2
    assert outcome.violation is not None


# ---------------------------------------------------------------------------
# Persistence of streamed output
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_long_text_is_written_through(enforcer, turn_log, workspace_dir):
    factory = _script(_step(_text("a" * 600), _text("b" * 10), _tool(1, "submit_plan", {})))

    await _run(enforcer, factory, workspace_dir)

    assert turn_log.append_message.await_args_list[:2] == [
        call(TURN_ID, 0, "a" * 600),
        call(TURN_ID, 0, "a" * 600 + "b" * 10),
    ]


@pytest.mark.asyncio
async def test_segments_alternate(enforcer, turn_log, workspace_dir):
    factory = _script(
        _step(_thinking("hmm"), _text("first"), _thinking("again"), _text("second"), _tool(1, "submit_plan", {}))
    )

    await _run(enforcer, factory, workspace_dir)

    assert turn_log.append_thought.await_args_list == [call(TURN_ID, 0, "hmm"), call(TURN_ID, 1, "again")]
    assert turn_log.append_message.await_args_list == [call(TURN_ID, 0, "first"), call(TURN_ID, 1, "second")]


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_error_fails_the_turn(enforcer, turn_log, workspace_dir):
    factory = _script(
        [_start(), _text("partial"), {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}]
    )

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.FAILED
    assert outcome.violation is None
    turn_log.append_message.assert_any_await(TURN_ID, 0, "partial")
    turn_log.fail_turn.assert_awaited_once_with(TURN_ID, "provider error: busy")


@pytest.mark.asyncio
async def test_stream_exception_fails_the_turn(enforcer, turn_log, workspace_dir):
    async def factory(request):
        yield _text("so far")
        raise ConnectionError("socket closed")

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.FAILED
    assert outcome.error == "socket closed"
    turn_log.append_message.assert_awaited_once_with(TURN_ID, 0, "so far")
    turn_log.fail_turn.assert_awaited_once_with(TURN_ID, "stream error: socket closed")


@pytest.mark.asyncio
async def test_cancel_between_chunks(enforcer, turn_log, workspace_dir):
    cancel = asyncio.Event()

    async def factory(request):
        yield _text("working")
        cancel.set()
        yield _text(" more")
        yield _tool(1, "submit_plan", {})[0]

    outcome = await _run(enforcer, factory, workspace_dir, cancel_event=cancel)

    assert outcome.cancelled
    assert outcome.state is TurnState.FAILED
    turn_log.fail_turn.assert_awaited_once_with(TURN_ID, "cancelled")
    turn_log.fail_session.assert_awaited_once_with(SESSION_ID, "cancelled")
    turn_log.append_message.assert_awaited_once_with(TURN_ID, 0, "working")


@pytest.mark.asyncio
async def test_task_cancellation_propagates(enforcer, turn_log, workspace_dir):
    async def factory(request):
        yield _text("x")
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await _run(enforcer, factory, workspace_dir)
    turn_log.fail_turn.assert_awaited_once_with(TURN_ID, "cancelled")


@pytest.mark.asyncio
async def test_decision_that_cannot_be_recorded(enforcer, turn_log, workspace_dir):
    turn_log.create_questions.side_effect = BadRequestError("turn closed underneath us")
    questions = [{"type": "free_text", "prompt": "Why?"}]
    factory = _script(_step(_tool(1, "ask_questions", {"questions": questions})))

    outcome = await _run(enforcer, factory, workspace_dir)

    assert outcome.state is TurnState.FAILED
    turn_log.fail_turn.assert_awaited_once_with(TURN_ID, "turn closed underneath us")


# ---------------------------------------------------------------------------
# Decision handle / definitions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_turn_decision_is_single_use(turn_log):
    decision = TurnDecision(turn_log, SESSION_ID, TURN_ID)
    await decision.finalize()
    assert decision.action is TerminalAction.FINALIZE

    with pytest.raises(ProtocolViolation, match="already decided"):
        await decision.checkpoint()
    turn_log.complete_turn.assert_awaited_once()


def test_tool_definitions_include_terminal_tools(enforcer):
    defs = enforcer.tool_definitions()
    names = [d["name"] for d in defs]
    assert names.index("read_file") < names.index("submit_plan")
    ask = next(d for d in defs if d["name"] == "ask_questions")
    assert ask["input_schema"]["required"] == ["questions"]
    assert enforcer.is_terminal("complete_review")
    assert not enforcer.is_terminal("read_file")


def test_custom_terminal_set(turn_log):
    dispatcher = ToolDispatcher(Registry(), WorkspacePool())
    enforcer = TurnProtocolEnforcer(
        default_provider_registry(), dispatcher, turn_log, terminal_tools={"done": TerminalAction.FINALIZE}
    )
    assert enforcer.terminal_tools == {"done": TerminalAction.FINALIZE}
    assert [d["name"] for d in enforcer.tool_definitions()] == ["done"]
