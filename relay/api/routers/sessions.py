"""Sessions router -- history read-back and operator cancellation."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from relay.api.deps import get_runtime
from relay.services.runtime import RelayRuntime

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ── GET /sessions/{session_id}/history ───────────────────────────────────


@router.get("/{session_id}/history")
async def session_history(
    session_id: UUID,
    include_hidden: bool = Query(default=False),
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Every turn of a session, in turn order, with its ordered contents."""
    session = await runtime.turn_log.get_session(session_id)
    turns = await runtime.turn_log.history(session_id, include_hidden=include_hidden)
    return {
        "session": session,
        "turns": [
            {
                **rec.turn,
                "messages": rec.messages,
                "thoughts": rec.thoughts,
                "tools": rec.tools,
                "questions": rec.questions,
            }
            for rec in turns
        ],
    }


# ── GET /sessions/{session_id}/questions ─────────────────────────────────


@router.get("/{session_id}/questions")
async def pending_questions(
    session_id: UUID,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Questions still waiting for an answer."""
    await runtime.turn_log.get_session(session_id)
    return {"items": await runtime.turn_log.pending_questions(session_id)}


# ── POST /sessions/{session_id}/cancel ───────────────────────────────────


@router.post("/{session_id}/cancel")
async def cancel_session(
    session_id: UUID,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Cancel a session; a running one stops after its in-flight tool call."""
    return await runtime.cancel_session(session_id)
