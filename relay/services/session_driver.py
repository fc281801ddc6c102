"""Session driver — loop turns for one session until it stops.

Each turn starts from an empty model context: the opening user message
is rebuilt from the durable record (checkpoint notes and todos, then the
answered questions or the caller's message).  The loop stops when the
agent finalizes, asks questions, violates the turn protocol, is
cancelled, or reaches ``MAX_TURNS_PER_SESSION``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import UUID

from relay.config import settings
from relay.errors import ConflictError, TurnInProgressError
from relay.services.turn_log import TurnLog, format_answered_questions
from relay.services.turn_protocol import StreamFactory, TurnOutcome, TurnProtocolEnforcer

logger = logging.getLogger(__name__)

CONTINUE_MESSAGE = "Continue from your checkpoint."


class SessionControl:
    """Per-session locks and cancel flags.

    Owned by the runtime.  A session holds its lock for as long as a
    driver runs it, which keeps turns strictly sequential.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._cancel: dict[UUID, asyncio.Event] = {}

    def lock(self, session_id: UUID) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def cancel_event(self, session_id: UUID) -> asyncio.Event:
        return self._cancel.setdefault(session_id, asyncio.Event())

    def is_running(self, session_id: UUID) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def request_cancel(self, session_id: UUID) -> bool:
        """Flag a running session; returns False when nothing is in flight."""
        if not self.is_running(session_id):
            return False
        self.cancel_event(session_id).set()
        return True

    def release(self, session_id: UUID) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        self._cancel.pop(session_id, None)

    def running_sessions(self) -> list[UUID]:
        return [sid for sid, lock in self._locks.items() if lock.locked()]

    def cancel_all(self) -> int:
        running = self.running_sessions()
        for sid in running:
            self.cancel_event(sid).set()
        return len(running)


@dataclass
class SessionOutcome:
    session_id: UUID
    status: str  # completed | awaiting_input | failed
    end_reason: str = ""
    turns: list[TurnOutcome] = field(default_factory=list)
    payload: dict | None = None
    questions: list[dict] = field(default_factory=list)


class SessionDriver:
    def __init__(
        self,
        enforcer: TurnProtocolEnforcer,
        turn_log: TurnLog,
        control: SessionControl,
        *,
        max_turns: int | None = None,
    ) -> None:
        self._enforcer = enforcer
        self._log = turn_log
        self._control = control
        self._max_turns = max_turns or settings.MAX_TURNS_PER_SESSION

    async def run(
        self,
        session_id: UUID,
        message: str,
        stream_factory: StreamFactory,
        *,
        root: str,
        alt_root: str | None = None,
    ) -> SessionOutcome:
        """Drive *session_id* starting with *message* as the first user turn."""
        lock = self._control.lock(session_id)
        if lock.locked():
            raise TurnInProgressError(session_id)
        try:
            async with lock:
                return await self._loop(session_id, message, stream_factory, root, alt_root)
        finally:
            self._control.release(session_id)

    async def resume(
        self,
        session_id: UUID,
        stream_factory: StreamFactory,
        *,
        root: str,
        alt_root: str | None = None,
        comment: str | None = None,
        skip_unanswered: bool = False,
    ) -> SessionOutcome:
        """Continue after questions were answered.

        Pending questions must be answered first unless *skip_unanswered*
        is set, in which case they are marked skipped.
        """
        pending = await self._log.pending_questions(session_id)
        if pending and not skip_unanswered:
            raise ConflictError(
                f"Session {session_id} has {len(pending)} unanswered question(s)"
            )
        if pending:
            await self._log.skip_pending_questions(session_id)

        message = await self._answers_message(session_id, comment)
        return await self.run(
            session_id, message or CONTINUE_MESSAGE, stream_factory, root=root, alt_root=alt_root
        )

    async def _answers_message(self, session_id: UUID, comment: str | None) -> str:
        for turn in reversed(await self._log.list_turns(session_id)):
            if turn["role"] != "assistant":
                continue
            questions = await self._log.questions_for_turn(turn["id"])
            if questions:
                return format_answered_questions(questions, comment)
            break
        return comment or ""

    async def _loop(
        self,
        session_id: UUID,
        message: str,
        stream_factory: StreamFactory,
        root: str,
        alt_root: str | None,
    ) -> SessionOutcome:
        session = await self._log.get_session(session_id)
        if session["status"] != "active":
            raise ConflictError(f"Session {session_id} is {session['status']}")

        await self._log.recover_session(session_id)
        cancel_event = self._control.cancel_event(session_id)
        outcome = SessionOutcome(session_id=session_id, status="failed")

        for _ in range(self._max_turns):
            checkpoint = await self._log.render_checkpoint(session_id)
            opening = "\n\n".join(part for part in (checkpoint, message) if part)
            await self._log.record_user_turn(session_id, opening)

            turn = await self._enforcer.run_turn(
                session,
                opening,
                stream_factory,
                root=root,
                alt_root=alt_root,
                cancel_event=cancel_event,
            )
            outcome.turns.append(turn)

            if turn.finalized:
                outcome.status = "completed"
                outcome.end_reason = "finalized"
                outcome.payload = turn.payload
                return outcome

            if turn.cancelled:
                outcome.end_reason = "cancelled"
                return outcome

            if turn.error is not None:
                reason = "protocol_violation" if turn.violation else "turn_failed"
                await self._log.fail_session(session_id, reason)
                outcome.end_reason = reason
                return outcome

            if turn.needs_input:
                outcome.status = "awaiting_input"
                outcome.end_reason = "questions"
                outcome.questions = turn.questions
                return outcome

            message = CONTINUE_MESSAGE

        logger.warning("Session %s: stopped after %d turns", session_id, self._max_turns)
        await self._log.fail_session(session_id, "max_turns")
        outcome.end_reason = "max_turns"
        return outcome
