"""Turn log — the durable, append-only record of every session.

``TurnLog`` is the only persistence surface the protocol enforcer, tools
and API routers use; it exposes entity-scoped operations and never raw
storage.  Reading a session back (``history``) orders turns by
``turn_index`` and every entity within a turn by its own ordinal, never
by wall-clock time, so an agent's working memory can be discarded and
rebuilt without loss.

Module-level helpers are pure and shared with tests:

* ``assemble_history`` — group flat record lists into ordered turns
* ``validate_answer`` — type-aware validation of a question answer
* ``format_answered_questions`` — render resolved questions as a user message
* ``render_checkpoint`` — render notes and todos for the start of a turn
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from relay.errors import BadRequestError, NotFoundError, QuestionStateError
from relay.repos import checkpoint_repo, question_repo, session_repo, turn_repo
from relay.repos.db import Database
from relay.streaming.events import StreamUsage
from relay_ide.contracts import ToolResult

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("single_select", "multi_select", "ranked", "free_text")


# ---------------------------------------------------------------------------
# History model
# ---------------------------------------------------------------------------


@dataclass
class TurnRecord:
    """One turn and everything recorded inside it, each list in ordinal order."""

    turn: dict
    messages: list[dict] = field(default_factory=list)
    thoughts: list[dict] = field(default_factory=list)
    tools: list[dict] = field(default_factory=list)
    questions: list[dict] = field(default_factory=list)

    @property
    def turn_index(self) -> int:
        return self.turn["turn_index"]

    @property
    def text(self) -> str:
        return "".join(m["content"] for m in self.messages)


def assemble_history(records: dict[str, list[dict]]) -> list[TurnRecord]:
    """Group flat record lists into turns ordered by turn_index then ordinal.

    Input lists may arrive in any order.  Rows whose turn is not present
    (e.g. hidden turns filtered out) are dropped.
    """
    by_id: dict[Any, TurnRecord] = {
        t["id"]: TurnRecord(turn=t) for t in records.get("turns", [])
    }
    for key, ordinal in (
        ("messages", "message_index"),
        ("thoughts", "thought_index"),
        ("tools", "tool_index"),
        ("questions", "question_index"),
    ):
        for row in records.get(key, []):
            rec = by_id.get(row["turn_id"])
            if rec is not None:
                getattr(rec, key).append(row)
        for rec in by_id.values():
            getattr(rec, key).sort(key=lambda r, o=ordinal: r[o])

    return sorted(by_id.values(), key=lambda r: r.turn_index)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


def _option_labels(options: list) -> list[str]:
    return [o.get("label", "") if isinstance(o, dict) else str(o) for o in options or []]


def validate_question_spec(question: dict) -> dict:
    """Check a question the agent wants to ask; returns the normalised form."""
    qtype = question.get("type")
    prompt = (question.get("prompt") or "").strip()
    options = question.get("options") or []
    if qtype not in QUESTION_TYPES:
        raise BadRequestError(f"Unknown question type {qtype!r}")
    if not prompt:
        raise BadRequestError("Question prompt must not be empty")
    if qtype != "free_text" and len(_option_labels(options)) < 2:
        raise BadRequestError(f"{qtype} questions need at least two options")
    return {"type": qtype, "prompt": prompt, "options": options}


def validate_answer(question: dict, answer: object) -> object:
    """Check *answer* against the question's type and options.

    Raises :class:`BadRequestError` on a mismatch.
    """
    qtype = question["type"]
    labels = _option_labels(question.get("options_json") or [])

    if answer is None:
        raise BadRequestError("Answer must not be null")

    if qtype == "free_text":
        if not isinstance(answer, str) or not answer.strip():
            raise BadRequestError("free_text answers must be a non-empty string")
        return answer

    if qtype == "single_select":
        if not isinstance(answer, str) or answer not in labels:
            raise BadRequestError(f"Answer must be one of: {', '.join(labels)}")
        return answer

    if not isinstance(answer, list) or not all(isinstance(a, str) for a in answer):
        raise BadRequestError(f"{qtype} answers must be a list of option labels")

    if qtype == "multi_select":
        if not answer or len(set(answer)) != len(answer) or not set(answer) <= set(labels):
            raise BadRequestError("multi_select answers must be distinct options from the list")
        return answer

    # ranked
    if sorted(answer) != sorted(labels):
        raise BadRequestError("ranked answers must order every option exactly once")
    return answer


def format_answered_questions(questions: list[dict], comment: str | None = None) -> str:
    """Render resolved questions as the next user message."""
    parts: list[str] = []

    answered = [q for q in questions if q["status"] == "answered"]
    if answered:
        lines = []
        for q in answered:
            answer = q.get("answer_json")
            shown = ", ".join(str(a) for a in answer) if isinstance(answer, list) else str(answer)
            lines.append(f"**{q['prompt']}**: {shown}")
        parts.append("\n\n".join(lines))

    skipped = [q for q in questions if q["status"] == "skipped"]
    if skipped:
        listing = "\n".join(f"- {q['prompt']}" for q in skipped)
        parts.append(f"**Questions I chose not to answer:**\n{listing}")

    if comment:
        parts.append(f"**Additional comments:**\n{comment}")

    return "\n\n---\n\n".join(parts)


# ---------------------------------------------------------------------------
# Checkpoint rendering
# ---------------------------------------------------------------------------


def render_checkpoint(notes: list[dict], todos: list[dict]) -> str:
    """Render notes and todos so a fresh turn can resume where the last stopped."""
    if not notes and not todos:
        return ""
    sections = ["## Checkpoint"]
    if notes:
        sections.append("### Notes\n" + "\n".join(f"- {n['content']}" for n in notes))
    if todos:
        lines = []
        for t in sorted(todos, key=lambda t: t["sort_order"]):
            mark = "x" if t["checked"] else " "
            desc = f": {t['description']}" if t.get("description") else ""
            lines.append(f"- [{mark}] {t['title']}{desc} (id: {t['id']})")
        sections.append("### Todos\n" + "\n".join(lines))
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# TurnLog
# ---------------------------------------------------------------------------


class TurnLog:
    """Entity-scoped access to sessions, turns and checkpoint records."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -- sessions -------------------------------------------------------------

    async def create_session(
        self, context_type: str, context_id: str, agent_role: str, *, provider: str = ""
    ) -> dict:
        session = await session_repo.create_session(
            self._db, context_type, context_id, agent_role, provider=provider
        )
        logger.info(
            "Session %s started (%s/%s, role=%s)", session["id"], context_type, context_id, agent_role
        )
        return session

    async def get_session(self, session_id: UUID) -> dict:
        session = await session_repo.get_session(self._db, session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def complete_session(self, session_id: UUID, *, end_reason: str = "finalized") -> dict | None:
        return await session_repo.complete_session(self._db, session_id, end_reason=end_reason)

    async def fail_session(self, session_id: UUID, end_reason: str) -> dict | None:
        return await session_repo.fail_session(self._db, session_id, end_reason)

    # -- turns ----------------------------------------------------------------

    async def begin_turn(self, session_id: UUID, *, role: str = "assistant", hidden: bool = False) -> dict:
        return await turn_repo.create_turn(self._db, session_id, role, hidden=hidden)

    async def complete_turn(self, turn_id: UUID, usage: StreamUsage | None = None) -> dict:
        usage = usage or StreamUsage()
        return await turn_repo.complete_turn(
            self._db,
            turn_id,
            prompt_tokens=usage.input_tokens,
            completion_tokens=usage.output_tokens,
            model_id=usage.model,
        )

    async def fail_turn(self, turn_id: UUID, error_detail: str) -> dict | None:
        return await turn_repo.fail_turn(self._db, turn_id, error_detail)

    async def list_turns(self, session_id: UUID) -> list[dict]:
        return await turn_repo.list_turns(self._db, session_id)

    async def record_user_turn(self, session_id: UUID, content: str, *, hidden: bool = False) -> dict:
        """Persist a complete user turn holding one message."""
        turn = await turn_repo.create_turn(self._db, session_id, "user", hidden=hidden)
        await turn_repo.upsert_message(self._db, turn["id"], 0, content)
        return await turn_repo.complete_turn(self._db, turn["id"])

    async def append_message(self, turn_id: UUID, index: int, content: str) -> dict:
        return await turn_repo.upsert_message(self._db, turn_id, index, content)

    async def append_thought(self, turn_id: UUID, index: int, content: str) -> dict:
        return await turn_repo.upsert_thought(self._db, turn_id, index, content)

    async def start_tool(
        self,
        turn_id: UUID,
        tool_index: int,
        tool_name: str,
        tool_input: dict,
        *,
        reason: str = "",
        tool_call_id: str = "",
    ) -> dict:
        return await turn_repo.start_tool_invocation(
            self._db, turn_id, tool_index, tool_name, tool_input,
            reason=reason, tool_call_id=tool_call_id,
        )

    async def finish_tool(self, invocation_id: UUID, result: ToolResult) -> dict:
        return await turn_repo.finish_tool_invocation(
            self._db, invocation_id, success=result.success, output=result.output
        )

    async def reject_tool(
        self,
        turn_id: UUID,
        tool_index: int,
        tool_name: str,
        tool_input: dict,
        output: str,
        *,
        tool_call_id: str = "",
    ) -> dict:
        return await turn_repo.record_rejected_tool(
            self._db, turn_id, tool_index, tool_name, tool_input, output, tool_call_id=tool_call_id
        )

    async def history(self, session_id: UUID, *, include_hidden: bool = True) -> list[TurnRecord]:
        records = await turn_repo.fetch_session_records(
            self._db, session_id, include_hidden=include_hidden
        )
        return assemble_history(records)

    async def recover_session(self, session_id: UUID) -> int:
        """Close turns a crash left streaming; return the next turn_index."""
        closed = await turn_repo.recover_interrupted_turns(self._db, session_id)
        if closed:
            logger.warning("Session %s: closed %d interrupted turn(s)", session_id, closed)
        return await turn_repo.next_turn_index(self._db, session_id)

    # -- questions ------------------------------------------------------------

    async def create_questions(self, session_id: UUID, turn_id: UUID, questions: list[dict]) -> list[dict]:
        specs = [validate_question_spec(q) for q in questions]
        return await question_repo.create_questions(self._db, session_id, turn_id, specs)

    async def answer_question(self, question_id: UUID, answer: object) -> dict:
        question = await question_repo.get_question(self._db, question_id)
        if question is None:
            raise NotFoundError(f"Question {question_id} not found")
        if question["status"] != "pending":
            raise QuestionStateError(f"Question {question_id} is already {question['status']}")
        answer = validate_answer(question, answer)
        updated = await question_repo.answer_question(self._db, question_id, answer)
        if updated is None:
            raise QuestionStateError(f"Question {question_id} was resolved concurrently")
        return updated

    async def skip_pending_questions(self, session_id: UUID) -> int:
        return await question_repo.skip_pending_questions(self._db, session_id)

    async def pending_questions(self, session_id: UUID) -> list[dict]:
        return await question_repo.list_pending_questions(self._db, session_id)

    async def questions_for_turn(self, turn_id: UUID) -> list[dict]:
        return await question_repo.list_questions_for_turn(self._db, turn_id)

    # -- checkpoint -----------------------------------------------------------

    async def add_note(self, session_id: UUID, content: str, *, context_type: str = "", context_id: str = "") -> dict:
        return await checkpoint_repo.add_note(
            self._db, session_id, content, context_type=context_type, context_id=context_id
        )

    async def add_todos(
        self, session_id: UUID, items: list[dict], *, context_type: str = "", context_id: str = ""
    ) -> list[dict]:
        return await checkpoint_repo.add_todos(
            self._db, session_id, items, context_type=context_type, context_id=context_id
        )

    async def check_todos(self, session_id: UUID, todo_ids: list[UUID]) -> list[dict]:
        return await checkpoint_repo.check_todos(self._db, session_id, todo_ids)

    async def list_notes(self, session_id: UUID) -> list[dict]:
        return await checkpoint_repo.list_notes(self._db, session_id)

    async def list_todos(self, session_id: UUID) -> list[dict]:
        return await checkpoint_repo.list_todos(self._db, session_id)

    async def render_checkpoint(self, session_id: UUID) -> str:
        notes = await checkpoint_repo.list_notes(self._db, session_id)
        todos = await checkpoint_repo.list_todos(self._db, session_id)
        return render_checkpoint(notes, todos)
