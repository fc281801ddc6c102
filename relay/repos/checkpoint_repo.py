"""Checkpoint repository — session_notes and session_todos.

Notes are additive.  Todos are toggle-complete: they are never deleted
and ``checked`` only moves false → true.
"""

from __future__ import annotations

from uuid import UUID

from relay.repos.db import Database


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


async def add_note(
    db: Database, session_id: UUID, content: str, *, context_type: str = "", context_id: str = ""
) -> dict:
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        INSERT INTO session_notes (session_id, context_type, context_id, content)
        VALUES ($1, $2, $3, $4)
        RETURNING *
        """,
        session_id,
        context_type,
        context_id,
        content,
    )
    return dict(row)


async def list_notes(db: Database, session_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        "SELECT * FROM session_notes WHERE session_id = $1 ORDER BY created_at, id",
        session_id,
    )
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


async def add_todos(
    db: Database,
    session_id: UUID,
    items: list[dict],
    *,
    context_type: str = "",
    context_id: str = "",
) -> list[dict]:
    """Append todos after the session's current last sort_order."""
    pool = await db.pool()
    created: list[dict] = []
    async with pool.acquire() as conn:
        async with conn.transaction():
            base = await conn.fetchval(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM session_todos WHERE session_id = $1",
                session_id,
            )
            for offset, item in enumerate(items):
                row = await conn.fetchrow(
                    """
                    INSERT INTO session_todos
                        (session_id, context_type, context_id, title, description, sort_order)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    session_id,
                    context_type,
                    context_id,
                    item["title"],
                    item.get("description", ""),
                    base + offset,
                )
                created.append(dict(row))
    return created


async def check_todos(db: Database, session_id: UUID, todo_ids: list[UUID]) -> list[dict]:
    """Mark todos done.  Returns the rows that changed; unknown ids are ignored."""
    pool = await db.pool()
    rows = await pool.fetch(
        """
        UPDATE session_todos
           SET checked = true, checked_at = now()
         WHERE session_id = $1 AND id = ANY($2::uuid[]) AND checked = false
        RETURNING *
        """,
        session_id,
        todo_ids,
    )
    return [dict(r) for r in rows]


async def list_todos(db: Database, session_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        "SELECT * FROM session_todos WHERE session_id = $1 ORDER BY sort_order",
        session_id,
    )
    return [dict(r) for r in rows]
