"""Turn repository — database ops for turns, turn_messages, turn_thoughts
and tool_invocations.

Rows for a turn are only writable while the turn is ``streaming``; every
write below is guarded on that status in SQL.
"""

from __future__ import annotations

import json
from uuid import UUID

from relay.repos.db import Database
from relay.repos.question_repo import decode_question


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


async def create_turn(db: Database, session_id: UUID, role: str, *, hidden: bool = False) -> dict:
    """Insert a streaming turn at the next turn_index for the session.

    The ``UNIQUE (session_id, turn_index)`` constraint rejects a second
    concurrent writer instead of letting two turns share an index.
    """
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        INSERT INTO turns (session_id, turn_index, role, status, hidden)
        VALUES (
            $1,
            (SELECT COALESCE(MAX(turn_index), -1) + 1 FROM turns WHERE session_id = $1),
            $2, 'streaming', $3
        )
        RETURNING *
        """,
        session_id,
        role,
        hidden,
    )
    return dict(row)


async def get_turn(db: Database, turn_id: UUID) -> dict | None:
    pool = await db.pool()
    row = await pool.fetchrow("SELECT * FROM turns WHERE id = $1", turn_id)
    return dict(row) if row else None


async def list_turns(db: Database, session_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        "SELECT * FROM turns WHERE session_id = $1 ORDER BY turn_index",
        session_id,
    )
    return [dict(r) for r in rows]


async def complete_turn(
    db: Database,
    turn_id: UUID,
    *,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    model_id: str = "",
) -> dict:
    """Mark a streaming turn completed and record token usage.

    Raises ``ValueError`` if the turn is missing or no longer streaming.
    """
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        UPDATE turns
           SET status = 'completed',
               prompt_tokens = $2,
               completion_tokens = $3,
               token_count = $2 + $3,
               model_id = $4,
               completed_at = now()
         WHERE id = $1 AND status = 'streaming'
        RETURNING *
        """,
        turn_id,
        prompt_tokens,
        completion_tokens,
        model_id,
    )
    if row is None:
        raise ValueError(f"Turn {turn_id} not found or not streaming")
    return dict(row)


async def fail_turn(db: Database, turn_id: UUID, error_detail: str) -> dict | None:
    """Mark a streaming turn failed.  Returns ``None`` if it already ended."""
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        UPDATE turns
           SET status = 'failed', error_detail = $2, completed_at = now()
         WHERE id = $1 AND status = 'streaming'
        RETURNING *
        """,
        turn_id,
        error_detail[:4000],
    )
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Messages / thoughts
# ---------------------------------------------------------------------------


async def upsert_message(db: Database, turn_id: UUID, message_index: int, content: str) -> dict:
    """Insert or replace a message segment of a streaming turn."""
    return await _upsert_segment(db, "turn_messages", "message_index", turn_id, message_index, content)


async def upsert_thought(db: Database, turn_id: UUID, thought_index: int, content: str) -> dict:
    """Insert or replace a thinking segment of a streaming turn."""
    return await _upsert_segment(db, "turn_thoughts", "thought_index", turn_id, thought_index, content)


async def _upsert_segment(
    db: Database, table: str, ordinal: str, turn_id: UUID, index: int, content: str
) -> dict:
    pool = await db.pool()
    row = await pool.fetchrow(
        f"""
        INSERT INTO {table} (turn_id, {ordinal}, content)
        SELECT $1, $2, $3
         WHERE EXISTS (SELECT 1 FROM turns WHERE id = $1 AND status = 'streaming')
        ON CONFLICT (turn_id, {ordinal}) DO UPDATE SET content = EXCLUDED.content
        RETURNING *
        """,
        turn_id,
        index,
        content,
    )
    if row is None:
        raise ValueError(f"Turn {turn_id} not found or not streaming")
    return dict(row)


# ---------------------------------------------------------------------------
# Tool invocations
# ---------------------------------------------------------------------------


def _decode_invocation(row) -> dict:
    d = dict(row)
    val = d.get("input_json")
    if isinstance(val, str):
        d["input_json"] = json.loads(val)
    return d


async def start_tool_invocation(
    db: Database,
    turn_id: UUID,
    tool_index: int,
    tool_name: str,
    tool_input: dict,
    *,
    reason: str = "",
    tool_call_id: str = "",
) -> dict:
    """Record a tool call as pending before it executes.

    A partial unique index allows at most one pending invocation per turn.
    """
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        INSERT INTO tool_invocations
            (turn_id, tool_index, tool_call_id, tool_name, reason, input_json, status)
        VALUES ($1, $2, $3, $4, $5, $6::jsonb, 'pending')
        RETURNING *
        """,
        turn_id,
        tool_index,
        tool_call_id,
        tool_name,
        reason,
        json.dumps(tool_input),
    )
    return _decode_invocation(row)


async def finish_tool_invocation(
    db: Database, invocation_id: UUID, *, success: bool, output: str
) -> dict:
    """Resolve a pending invocation.  Raises ``ValueError`` if it is not pending."""
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        UPDATE tool_invocations
           SET status = $2, output = $3, completed_at = now()
         WHERE id = $1 AND status = 'pending'
        RETURNING *
        """,
        invocation_id,
        "success" if success else "failed",
        output,
    )
    if row is None:
        raise ValueError(f"Tool invocation {invocation_id} not found or not pending")
    return _decode_invocation(row)


async def record_rejected_tool(
    db: Database,
    turn_id: UUID,
    tool_index: int,
    tool_name: str,
    tool_input: dict,
    output: str,
    *,
    tool_call_id: str = "",
) -> dict:
    """Record a tool call that was refused without executing."""
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        INSERT INTO tool_invocations
            (turn_id, tool_index, tool_call_id, tool_name, input_json, output,
             status, completed_at)
        VALUES ($1, $2, $3, $4, $5::jsonb, $6, 'failed', now())
        RETURNING *
        """,
        turn_id,
        tool_index,
        tool_call_id,
        tool_name,
        json.dumps(tool_input),
        output,
    )
    return _decode_invocation(row)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


async def recover_interrupted_turns(db: Database, session_id: UUID) -> int:
    """Close turns left ``streaming`` by a crash.

    Pending invocations become failed ("interrupted") and the turns
    become failed.  Returns the number of turns closed.
    """
    pool = await db.pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                UPDATE tool_invocations ti
                   SET status = 'failed',
                       output = COALESCE(ti.output, 'Error: interrupted before completion'),
                       completed_at = now()
                  FROM turns t
                 WHERE ti.turn_id = t.id
                   AND t.session_id = $1
                   AND t.status = 'streaming'
                   AND ti.status = 'pending'
                """,
                session_id,
            )
            result = await conn.execute(
                """
                UPDATE turns
                   SET status = 'failed',
                       error_detail = 'interrupted: process stopped mid-turn',
                       completed_at = now()
                 WHERE session_id = $1 AND status = 'streaming'
                """,
                session_id,
            )
    # asyncpg returns e.g. "UPDATE 2"
    return int(result.split()[-1]) if result else 0


async def next_turn_index(db: Database, session_id: UUID) -> int:
    pool = await db.pool()
    value = await pool.fetchval(
        "SELECT COALESCE(MAX(turn_index), -1) + 1 FROM turns WHERE session_id = $1",
        session_id,
    )
    return int(value)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


async def fetch_session_records(
    db: Database, session_id: UUID, *, include_hidden: bool = True
) -> dict[str, list[dict]]:
    """Every turn-scoped record of a session, each list in ordinal order."""
    pool = await db.pool()
    turns = await pool.fetch(
        """
        SELECT * FROM turns
        WHERE session_id = $1 AND ($2 OR NOT hidden)
        ORDER BY turn_index
        """,
        session_id,
        include_hidden,
    )
    messages = await pool.fetch(
        """
        SELECT m.* FROM turn_messages m JOIN turns t ON t.id = m.turn_id
        WHERE t.session_id = $1
        ORDER BY t.turn_index, m.message_index
        """,
        session_id,
    )
    thoughts = await pool.fetch(
        """
        SELECT th.* FROM turn_thoughts th JOIN turns t ON t.id = th.turn_id
        WHERE t.session_id = $1
        ORDER BY t.turn_index, th.thought_index
        """,
        session_id,
    )
    tools = await pool.fetch(
        """
        SELECT ti.* FROM tool_invocations ti JOIN turns t ON t.id = ti.turn_id
        WHERE t.session_id = $1
        ORDER BY t.turn_index, ti.tool_index
        """,
        session_id,
    )
    questions = await pool.fetch(
        """
        SELECT q.* FROM questions q JOIN turns t ON t.id = q.turn_id
        WHERE t.session_id = $1
        ORDER BY t.turn_index, q.question_index
        """,
        session_id,
    )
    return {
        "turns": [dict(r) for r in turns],
        "messages": [dict(r) for r in messages],
        "thoughts": [dict(r) for r in thoughts],
        "tools": [_decode_invocation(r) for r in tools],
        "questions": [decode_question(r) for r in questions],
    }
