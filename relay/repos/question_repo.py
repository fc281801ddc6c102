"""Question repository — database ops for the questions table.

A question is mutated exactly once (pending → answered | skipped) and
never deleted.  The table's CHECK constraint forbids ``answered`` with a
NULL answer.
"""

from __future__ import annotations

import json
from uuid import UUID

from relay.repos.db import Database


def decode_question(row) -> dict:
    d = dict(row)
    for col in ("options_json", "answer_json"):
        val = d.get(col)
        if isinstance(val, str):
            d[col] = json.loads(val)
    return d


async def create_questions(
    db: Database, session_id: UUID, turn_id: UUID, questions: list[dict]
) -> list[dict]:
    """Insert a batch of pending questions for a streaming turn, in order."""
    pool = await db.pool()
    created: list[dict] = []
    async with pool.acquire() as conn:
        async with conn.transaction():
            streaming = await conn.fetchval(
                "SELECT 1 FROM turns WHERE id = $1 AND status = 'streaming' FOR UPDATE",
                turn_id,
            )
            if streaming is None:
                raise ValueError(f"Turn {turn_id} not found or not streaming")
            for index, q in enumerate(questions):
                row = await conn.fetchrow(
                    """
                    INSERT INTO questions
                        (session_id, turn_id, question_index, type, prompt, options_json, status)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, 'pending')
                    RETURNING *
                    """,
                    session_id,
                    turn_id,
                    index,
                    q["type"],
                    q["prompt"],
                    json.dumps(q.get("options") or []),
                )
                created.append(decode_question(row))
    return created


async def get_question(db: Database, question_id: UUID) -> dict | None:
    pool = await db.pool()
    row = await pool.fetchrow("SELECT * FROM questions WHERE id = $1", question_id)
    return decode_question(row) if row else None


async def list_questions_for_turn(db: Database, turn_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        "SELECT * FROM questions WHERE turn_id = $1 ORDER BY question_index",
        turn_id,
    )
    return [decode_question(r) for r in rows]


async def list_pending_questions(db: Database, session_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        """
        SELECT q.* FROM questions q JOIN turns t ON t.id = q.turn_id
        WHERE q.session_id = $1 AND q.status = 'pending'
        ORDER BY t.turn_index, q.question_index
        """,
        session_id,
    )
    return [decode_question(r) for r in rows]


async def answer_question(db: Database, question_id: UUID, answer: object) -> dict | None:
    """Record an answer.  Returns ``None`` if the question was not pending."""
    if answer is None:
        raise ValueError("answer must not be null")
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        UPDATE questions
           SET status = 'answered', answer_json = $2::jsonb, answered_at = now()
         WHERE id = $1 AND status = 'pending'
        RETURNING *
        """,
        question_id,
        json.dumps(answer),
    )
    return decode_question(row) if row else None


async def skip_pending_questions(db: Database, session_id: UUID) -> int:
    """Mark every pending question of the session skipped."""
    pool = await db.pool()
    result = await pool.execute(
        """
        UPDATE questions
           SET status = 'skipped', answered_at = now()
         WHERE session_id = $1 AND status = 'pending'
        """,
        session_id,
    )
    return int(result.split()[-1]) if result else 0
