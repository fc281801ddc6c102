"""Session repository — database ops for the sessions table."""

from __future__ import annotations

from uuid import UUID

from relay.repos.db import Database


async def create_session(
    db: Database,
    context_type: str,
    context_id: str,
    agent_role: str,
    *,
    provider: str = "",
) -> dict:
    """Insert a new active session.

    Any other active session for the same context and role is closed
    first, so a context never has two live conversations for one agent.
    """
    pool = await db.pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                UPDATE sessions
                   SET status = 'completed', end_reason = 'superseded', updated_at = now()
                 WHERE context_type = $1 AND context_id = $2 AND agent_role = $3
                   AND status = 'active'
                """,
                context_type,
                context_id,
                agent_role,
            )
            row = await conn.fetchrow(
                """
                INSERT INTO sessions (context_type, context_id, agent_role, provider, status)
                VALUES ($1, $2, $3, $4, 'active')
                RETURNING *
                """,
                context_type,
                context_id,
                agent_role,
                provider,
            )
    return dict(row)


async def get_session(db: Database, session_id: UUID) -> dict | None:
    pool = await db.pool()
    row = await pool.fetchrow("SELECT * FROM sessions WHERE id = $1", session_id)
    return dict(row) if row else None


async def get_active_session(
    db: Database, context_type: str, context_id: str, agent_role: str
) -> dict | None:
    """Return the live session for a context/role pair, if any."""
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        SELECT * FROM sessions
        WHERE context_type = $1 AND context_id = $2 AND agent_role = $3
          AND status = 'active'
        ORDER BY created_at DESC
        LIMIT 1
        """,
        context_type,
        context_id,
        agent_role,
    )
    return dict(row) if row else None


async def list_sessions_for_context(db: Database, context_type: str, context_id: str) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        """
        SELECT * FROM sessions
        WHERE context_type = $1 AND context_id = $2
        ORDER BY created_at
        """,
        context_type,
        context_id,
    )
    return [dict(r) for r in rows]


async def complete_session(
    db: Database, session_id: UUID, *, end_reason: str = "finalized"
) -> dict | None:
    """Move an active session to completed.  Returns ``None`` if it was not active."""
    return await _end_session(db, session_id, "completed", end_reason)


async def fail_session(db: Database, session_id: UUID, end_reason: str) -> dict | None:
    """Move an active session to failed.  Returns ``None`` if it was not active."""
    return await _end_session(db, session_id, "failed", end_reason[:2000])


async def _end_session(db: Database, session_id: UUID, status: str, end_reason: str) -> dict | None:
    pool = await db.pool()
    row = await pool.fetchrow(
        """
        UPDATE sessions
           SET status = $2, end_reason = $3, updated_at = now()
         WHERE id = $1 AND status = 'active'
        RETURNING *
        """,
        session_id,
        status,
        end_reason,
    )
    return dict(row) if row else None


async def touch_session(db: Database, session_id: UUID) -> None:
    pool = await db.pool()
    await pool.execute("UPDATE sessions SET updated_at = now() WHERE id = $1", session_id)
