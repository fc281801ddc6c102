"""Questions router -- record a human answer."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from relay.api.deps import get_runtime
from relay.services.runtime import RelayRuntime

router = APIRouter(prefix="/questions", tags=["questions"])


class AnswerRequest(BaseModel):
    """Request body for answering a question.

    ``answer`` is a string for single_select / free_text and a list of
    option labels for multi_select / ranked.
    """
    answer: Any


# ── POST /questions/{question_id}/answer ─────────────────────────────────


@router.post("/{question_id}/answer")
async def answer_question(
    question_id: UUID,
    body: AnswerRequest,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Answer a pending question exactly once."""
    return await runtime.turn_log.answer_question(question_id, body.answer)
