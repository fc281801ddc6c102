"""Turn protocol enforcer — one turn, exactly one terminal action.

A turn is one exchange cycle: the agent streams output, asks for tools,
sees their results (possibly over several provider round-trips, called
*steps*), and ends by calling exactly one terminal tool:

* a **checkpoint** tool (``request_extension``, ``ask_questions``) that
  completes the turn and leaves the session open for another one, or
* a **finalize** tool (``submit_plan``, ``complete_review``, ...) that
  completes the turn and the session.

Terminal tools never reach the :class:`ToolDispatcher`; the enforcer
intercepts them and records the decision.  The turn can only be closed
through a single-use :class:`TurnDecision`, so a second terminal action
cannot slip through.  A turn that ends with zero or several terminal
actions is a :class:`ProtocolViolation`: the turn is marked failed and
the violation is logged for the operator.

States::

    awaiting_output -> streaming <-> tool_dispatch -> decided
                                 \\-> failed
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable
from uuid import UUID

from relay.config import settings
from relay.errors import BadRequestError, ProtocolViolation, RelayError
from relay.services.tool_dispatcher import ToolContext, ToolDispatcher
from relay.services.turn_log import TurnLog, validate_question_spec
from relay.streaming.events import StreamEvent, StreamUsage, ToolUseEnd
from relay.streaming.normalizer import ProviderRegistry, StreamNormalizer
from relay_ide.contracts import ToolResult

logger = logging.getLogger(__name__)

# Text is written through to the log at segment boundaries and whenever
# the open segment has grown by this many characters.
_TEXT_FLUSH_CHARS = 512


class TurnState(str, Enum):
    AWAITING_OUTPUT = "awaiting_output"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    DECIDED = "decided"
    FAILED = "failed"


class TerminalAction(str, Enum):
    CHECKPOINT = "checkpoint"
    FINALIZE = "finalize"


DEFAULT_TERMINAL_TOOLS: dict[str, TerminalAction] = {
    "request_extension": TerminalAction.CHECKPOINT,
    "ask_questions": TerminalAction.CHECKPOINT,
    "submit_scope": TerminalAction.FINALIZE,
    "submit_research": TerminalAction.FINALIZE,
    "submit_plan": TerminalAction.FINALIZE,
    "complete_pulse": TerminalAction.FINALIZE,
    "complete_preflight": TerminalAction.FINALIZE,
    "complete_review": TerminalAction.FINALIZE,
    "submit_sub_review": TerminalAction.FINALIZE,
    "submit_persona_roadmap": TerminalAction.FINALIZE,
    "submit_roadmap": TerminalAction.FINALIZE,
}


def terminal_tool_definition(name: str, action: TerminalAction) -> dict[str, Any]:
    """Provider-facing definition for a terminal tool."""
    if name == "ask_questions":
        return {
            "name": name,
            "description": (
                "Stop and ask the user structured questions. Ends this turn; "
                "the next turn starts with their answers."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "questions": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {
                                    "type": "string",
                                    "enum": ["single_select", "multi_select", "ranked", "free_text"],
                                },
                                "prompt": {"type": "string"},
                                "options": {"type": "array", "items": {"type": "string"}},
                            },
                            "required": ["type", "prompt"],
                        },
                    },
                },
                "required": ["questions"],
            },
        }
    if action is TerminalAction.CHECKPOINT:
        return {
            "name": name,
            "description": (
                "End this turn and continue in a fresh one. Save anything you "
                "need to remember with take_note / add_todo first."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "reason": {"type": "string"},
                    "note": {"type": "string"},
                },
                "required": [],
            },
        }
    return {
        "name": name,
        "description": "Submit your final result. Ends the session.",
        "input_schema": {"type": "object", "properties": {}, "required": []},
    }


# ---------------------------------------------------------------------------
# Step / outcome records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallRecord:
    tool_call_id: str
    name: str
    input: dict
    success: bool
    output: str


@dataclass(frozen=True)
class StepRequest:
    """What the stream factory needs to open the next provider stream.

    ``user_message`` is set on the first step only; later steps carry the
    results of the tool calls made in the previous step.
    """

    session_id: UUID
    turn_id: UUID
    step: int
    user_message: str
    tool_results: list[ToolCallRecord]
    tools: list[dict]


StreamFactory = Callable[[StepRequest], AsyncIterator[Any]]


@dataclass
class TurnOutcome:
    turn_id: UUID
    turn_index: int
    state: TurnState
    action: TerminalAction | None = None
    terminal_tool: str | None = None
    payload: dict | None = None
    questions: list[dict] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    text: str = ""
    usage: StreamUsage = field(default_factory=StreamUsage)
    error: str | None = None
    cancelled: bool = False
    violation: ProtocolViolation | None = None

    @property
    def finalized(self) -> bool:
        return self.action is TerminalAction.FINALIZE

    @property
    def needs_input(self) -> bool:
        return self.action is TerminalAction.CHECKPOINT and bool(self.questions)


# ---------------------------------------------------------------------------
# Decision handle
# ---------------------------------------------------------------------------


class TurnDecision:
    """Single-use handle through which a turn is closed.

    Calling ``checkpoint`` or ``finalize`` a second time raises
    :class:`ProtocolViolation`.
    """

    def __init__(self, turn_log: TurnLog, session_id: UUID, turn_id: UUID) -> None:
        self._log = turn_log
        self._session_id = session_id
        self._turn_id = turn_id
        self._action: TerminalAction | None = None

    @property
    def action(self) -> TerminalAction | None:
        return self._action

    def _claim(self, action: TerminalAction) -> None:
        if self._action is not None:
            raise ProtocolViolation(
                f"Turn {self._turn_id} was already decided ({self._action.value})",
                turn_id=self._turn_id,
            )
        self._action = action

    async def checkpoint(
        self,
        *,
        questions: list[dict] | None = None,
        notes: list[str] | None = None,
        usage: StreamUsage | None = None,
    ) -> list[dict]:
        """Persist open work, complete the turn and leave the session active."""
        self._claim(TerminalAction.CHECKPOINT)
        created: list[dict] = []
        if questions:
            created = await self._log.create_questions(self._session_id, self._turn_id, questions)
        for note in notes or []:
            await self._log.add_note(self._session_id, note)
        await self._log.complete_turn(self._turn_id, usage)
        return created

    async def finalize(self, *, usage: StreamUsage | None = None, end_reason: str = "finalized") -> None:
        """Complete the turn and the session."""
        self._claim(TerminalAction.FINALIZE)
        await self._log.complete_turn(self._turn_id, usage)
        await self._log.complete_session(self._session_id, end_reason=end_reason)


# ---------------------------------------------------------------------------
# Enforcer
# ---------------------------------------------------------------------------


class TurnProtocolEnforcer:
    """Runs turns: persists every event, dispatches tools, enforces one decision."""

    def __init__(
        self,
        providers: ProviderRegistry,
        dispatcher: ToolDispatcher,
        turn_log: TurnLog,
        *,
        terminal_tools: dict[str, TerminalAction] | None = None,
        max_steps: int | None = None,
    ) -> None:
        self._providers = providers
        self._dispatcher = dispatcher
        self._log = turn_log
        self._terminal = dict(terminal_tools if terminal_tools is not None else DEFAULT_TERMINAL_TOOLS)
        self._max_steps = max_steps or settings.MAX_STEPS_PER_TURN

    @property
    def terminal_tools(self) -> dict[str, TerminalAction]:
        return dict(self._terminal)

    def is_terminal(self, name: str) -> bool:
        return name in self._terminal

    def tool_definitions(self) -> list[dict]:
        """Dispatcher tools followed by the terminal tools."""
        defs = [d for d in self._dispatcher.tool_definitions() if d["name"] not in self._terminal]
        defs.extend(terminal_tool_definition(n, a) for n, a in self._terminal.items())
        return defs

    async def run_turn(
        self,
        session: dict,
        user_message: str,
        stream_factory: StreamFactory,
        *,
        root: str,
        alt_root: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Run one assistant turn to a decision, a violation or a cancellation."""
        provider = session.get("provider") or settings.DEFAULT_PROVIDER
        normalizer = StreamNormalizer(provider, self._providers)
        normalizer.reset()

        turn = await self._log.begin_turn(session["id"])
        context = ToolContext(
            root=root,
            alt_root=alt_root,
            session_id=session["id"],
            turn_id=turn["id"],
            context_type=session.get("context_type", ""),
            context_id=session.get("context_id", ""),
            turn_log=self._log,
        )
        run = _TurnRun(self, session, turn, normalizer, context, cancel_event)
        logger.info(
            "Session %s: turn %d started (provider=%s)", session["id"], turn["turn_index"], provider
        )

        try:
            await run.stream(user_message, stream_factory)
        except asyncio.CancelledError:
            await self._log.fail_turn(turn["id"], "cancelled")
            raise
        except Exception as exc:
            logger.exception("Session %s: turn %s stream failed", session["id"], turn["id"])
            await run.flush_segments()
            await self._log.fail_turn(turn["id"], f"stream error: {exc}")
            run.state = TurnState.FAILED
            run.error = str(exc)
            return run.outcome()

        return await run.conclude()


class _TurnRun:
    """Mutable bookkeeping for one turn."""

    def __init__(
        self,
        enforcer: TurnProtocolEnforcer,
        session: dict,
        turn: dict,
        normalizer: StreamNormalizer,
        context: ToolContext,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self.enforcer = enforcer
        self.log = enforcer._log
        self.session = session
        self.turn = turn
        self.normalizer = normalizer
        self.context = context
        self.cancel_event = cancel_event

        self.state = TurnState.AWAITING_OUTPUT
        self.usage = StreamUsage()
        self.error: str | None = None
        self.cancelled = False

        self.tool_index = 0
        self.message_index = 0
        self.thought_index = 0
        self.text_buf = ""
        self.text_flushed = 0
        self.thought_buf = ""
        self.full_text = ""

        self.step_results: list[ToolCallRecord] = []
        self.tool_calls: list[ToolCallRecord] = []
        self.terminal_calls: list[ToolUseEnd] = []
        self.decided_by: ToolUseEnd | None = None

    # -- streaming ------------------------------------------------------------

    def _cancel_requested(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self.cancelled = True
        return self.cancelled

    async def stream(self, user_message: str, stream_factory: StreamFactory) -> None:
        tools = self.enforcer.tool_definitions()
        previous: list[ToolCallRecord] = []
        for step in range(self.enforcer._max_steps):
            if self._cancel_requested():
                return
            self.normalizer.reset()
            self.step_results = []
            self.state = TurnState.STREAMING
            request = StepRequest(
                session_id=self.session["id"],
                turn_id=self.turn["id"],
                step=step,
                user_message=user_message if step == 0 else "",
                tool_results=previous,
                tools=tools,
            )
            async for chunk in stream_factory(request):
                if self._cancel_requested():
                    break
                for event in self.normalizer.process(chunk):
                    if self._cancel_requested():
                        break
                    await self.on_event(event)
                if self.cancelled or self.error is not None:
                    break
            if not self.cancelled and self.error is None:
                for event in self.normalizer.finish():
                    await self.on_event(event)
            self._add_usage(self.normalizer.usage)
            await self.flush_segments()

            if self.cancelled or self.error is not None or self.decided_by is not None:
                return
            if not self.step_results:
                return
            previous = self.step_results

        logger.warning(
            "Session %s: turn %s hit the %d step limit without a terminal action",
            self.session["id"],
            self.turn["id"],
            self.enforcer._max_steps,
        )

    def _add_usage(self, step_usage: StreamUsage) -> None:
        self.usage.input_tokens += step_usage.input_tokens
        self.usage.output_tokens += step_usage.output_tokens
        self.usage.cache_read_input_tokens += step_usage.cache_read_input_tokens
        self.usage.cache_creation_input_tokens += step_usage.cache_creation_input_tokens
        self.usage.model = step_usage.model or self.usage.model

    async def on_event(self, event: StreamEvent) -> None:
        kind = event.type
        if kind == "text_delta":
            await self._flush_thought()
            self.text_buf += event.text
            self.full_text += event.text
            if len(self.text_buf) - self.text_flushed >= _TEXT_FLUSH_CHARS:
                await self.log.append_message(self.turn["id"], self.message_index, self.text_buf)
                self.text_flushed = len(self.text_buf)
        elif kind == "thinking_delta":
            await self._flush_text()
            self.thought_buf += event.text
        elif kind == "tool_use_start":
            await self.flush_segments()
        elif kind == "tool_use_end":
            await self.flush_segments()
            await self.handle_tool_call(event)
        elif kind == "message_end":
            await self.flush_segments()
        elif kind == "error":
            await self.flush_segments()
            self.error = f"provider error: {event.message}"
            logger.error(
                "Session %s: provider stream error in turn %s: %s (%s)",
                self.session["id"],
                self.turn["id"],
                event.message,
                event.code,
            )

    async def _flush_text(self) -> None:
        if not self.text_buf:
            return
        await self.log.append_message(self.turn["id"], self.message_index, self.text_buf)
        self.message_index += 1
        self.text_buf = ""
        self.text_flushed = 0

    async def _flush_thought(self) -> None:
        if not self.thought_buf:
            return
        await self.log.append_thought(self.turn["id"], self.thought_index, self.thought_buf)
        self.thought_index += 1
        self.thought_buf = ""

    async def flush_segments(self) -> None:
        await self._flush_thought()
        await self._flush_text()

    # -- tools ----------------------------------------------------------------

    async def handle_tool_call(self, call: ToolUseEnd) -> None:
        index = self.tool_index
        self.tool_index += 1
        turn_id = self.turn["id"]

        if self.decided_by is not None:
            if self.enforcer.is_terminal(call.name):
                self.terminal_calls.append(call)
                output = f"Error: this turn already ended with {self.decided_by.name}; only one terminal action is allowed"
            else:
                output = f"Error: this turn already ended with {self.decided_by.name}; {call.name} was not executed"
            await self.log.reject_tool(
                turn_id, index, call.name, call.input, output, tool_call_id=call.tool_call_id
            )
            self._record(call, ToolResult.fail(output))
            return

        invocation = await self.log.start_tool(
            turn_id,
            index,
            call.name,
            call.input,
            reason=str(call.input.get("reason", "")),
            tool_call_id=call.tool_call_id,
        )

        if call.truncated:
            result = ToolResult.fail(
                f"Error: the response ended before the arguments for {call.name} were "
                f"complete; the call was not executed. Received: {(call.raw_input or '')[:200]}"
            )
        elif call.parse_failed:
            result = ToolResult.fail(
                f"Error: arguments for {call.name} were not valid JSON: {(call.raw_input or '')[:200]}"
            )
        elif self.enforcer.is_terminal(call.name):
            result = self._accept_terminal(call)
        else:
            self.state = TurnState.TOOL_DISPATCH
            result = await self.enforcer._dispatcher.execute(call.name, call.input, self.context)
            self.state = TurnState.STREAMING

        await self.log.finish_tool(invocation["id"], result)
        self._record(call, result)

    def _accept_terminal(self, call: ToolUseEnd) -> ToolResult:
        if call.name == "ask_questions":
            questions = call.input.get("questions")
            if not isinstance(questions, list) or not questions:
                return ToolResult.fail("Error: ask_questions needs a non-empty 'questions' list")
            try:
                for q in questions:
                    validate_question_spec(q if isinstance(q, dict) else {})
            except BadRequestError as exc:
                return ToolResult.fail(f"Error: {exc}")
            output = f"OK: {len(questions)} question(s) recorded; waiting for answers"
        elif self.enforcer._terminal[call.name] is TerminalAction.CHECKPOINT:
            output = "OK: turn will end; continue in the next turn"
        else:
            output = f"OK: {call.name} accepted"

        self.terminal_calls.append(call)
        self.decided_by = call
        return ToolResult.ok(output)

    def _record(self, call: ToolUseEnd, result: ToolResult) -> None:
        record = ToolCallRecord(
            tool_call_id=call.tool_call_id,
            name=call.name,
            input=call.input,
            success=result.success,
            output=result.output,
        )
        self.step_results.append(record)
        self.tool_calls.append(record)

    # -- conclusion -----------------------------------------------------------

    async def conclude(self) -> TurnOutcome:
        session_id = self.session["id"]
        turn_id = self.turn["id"]

        if self.cancelled:
            await self.log.fail_turn(turn_id, "cancelled")
            await self.log.fail_session(session_id, "cancelled")
            logger.warning("Session %s: cancelled during turn %s", session_id, turn_id)
            self.state = TurnState.FAILED
            return self.outcome()

        if self.error is not None:
            await self.log.fail_turn(turn_id, self.error)
            self.state = TurnState.FAILED
            return self.outcome()

        names = [c.name for c in self.terminal_calls]
        if len(names) != 1:
            detail = (
                "turn ended without a terminal action"
                if not names
                else f"turn ended with {len(names)} terminal actions ({', '.join(names)})"
            )
            violation = ProtocolViolation(detail, turn_id=turn_id, terminal_tools=names)
            logger.error("Protocol violation in session %s turn %s: %s", session_id, turn_id, detail)
            await self.log.fail_turn(turn_id, f"protocol violation: {detail}")
            self.state = TurnState.FAILED
            self.error = detail
            outcome = self.outcome()
            outcome.violation = violation
            return outcome

        call = self.terminal_calls[0]
        action = self.enforcer._terminal[call.name]
        decision = TurnDecision(self.log, session_id, turn_id)
        questions: list[dict] = []
        try:
            if action is TerminalAction.CHECKPOINT:
                note = call.input.get("note")
                questions = await decision.checkpoint(
                    questions=call.input.get("questions") if call.name == "ask_questions" else None,
                    notes=[note] if isinstance(note, str) and note.strip() else None,
                    usage=self.usage,
                )
            else:
                await decision.finalize(usage=self.usage)
        except RelayError as exc:
            logger.error("Session %s: could not record decision for turn %s: %s", session_id, turn_id, exc)
            await self.log.fail_turn(turn_id, str(exc))
            self.state = TurnState.FAILED
            self.error = str(exc)
            return self.outcome()

        self.state = TurnState.DECIDED
        logger.info(
            "Session %s: turn %d decided by %s (%s)",
            session_id,
            self.turn["turn_index"],
            call.name,
            action.value,
        )
        outcome = self.outcome()
        outcome.action = action
        outcome.terminal_tool = call.name
        outcome.payload = call.input
        outcome.questions = questions
        return outcome

    def outcome(self) -> TurnOutcome:
        return TurnOutcome(
            turn_id=self.turn["id"],
            turn_index=self.turn["turn_index"],
            state=self.state,
            tool_calls=list(self.tool_calls),
            text=self.full_text,
            usage=self.usage,
            error=self.error,
            cancelled=self.cancelled,
        )
