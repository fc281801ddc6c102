"""Fan-in repository — fan_in_groups and fan_in_members.

``record_member_outcome`` and ``claim_retry`` each run in one transaction
that locks the group row, so the "all members terminal?" check and the
claim of the downstream trigger are a single atomic step.
"""

from __future__ import annotations

import json
from uuid import UUID

from relay.repos.db import Database

_TERMINAL = ("completed", "failed")


def _decode_member(row) -> dict:
    d = dict(row)
    val = d.get("payload")
    if isinstance(val, str):
        d["payload"] = json.loads(val)
    return d


async def create_group(
    db: Database, member_ids: list[str], *, group_id: UUID | None = None
) -> dict:
    """Insert a group expecting exactly *member_ids*, all pending."""
    if not member_ids:
        raise ValueError("A fan-in group needs at least one member")
    pool = await db.pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                INSERT INTO fan_in_groups (id, expected_count, trigger_state)
                VALUES (COALESCE($1, gen_random_uuid()), $2, 'waiting')
                RETURNING *
                """,
                group_id,
                len(member_ids),
            )
            await conn.executemany(
                "INSERT INTO fan_in_members (group_id, member_id, status) VALUES ($1, $2, 'pending')",
                [(row["id"], m) for m in member_ids],
            )
    return dict(row)


async def get_group(db: Database, group_id: UUID) -> dict | None:
    pool = await db.pool()
    row = await pool.fetchrow("SELECT * FROM fan_in_groups WHERE id = $1", group_id)
    return dict(row) if row else None


async def list_members(db: Database, group_id: UUID) -> list[dict]:
    pool = await db.pool()
    rows = await pool.fetch(
        "SELECT * FROM fan_in_members WHERE group_id = $1 ORDER BY member_id",
        group_id,
    )
    return [_decode_member(r) for r in rows]


async def mark_member_running(
    db: Database, group_id: UUID, member_id: str, session_id: UUID | None
) -> None:
    pool = await db.pool()
    await pool.execute(
        """
        UPDATE fan_in_members
           SET status = 'running', session_id = $3
         WHERE group_id = $1 AND member_id = $2 AND status = 'pending'
        """,
        group_id,
        member_id,
        session_id,
    )


async def _counts(conn, group_id: UUID) -> tuple[int, int]:
    row = await conn.fetchrow(
        """
        SELECT count(*) FILTER (WHERE status = 'completed') AS completed,
               count(*) FILTER (WHERE status = 'failed')    AS failed
          FROM fan_in_members
         WHERE group_id = $1
        """,
        group_id,
    )
    return int(row["completed"]), int(row["failed"])


async def record_member_outcome(
    db: Database,
    group_id: UUID,
    member_id: str,
    *,
    status: str,
    payload: object = None,
    error: str | None = None,
) -> dict:
    """Mark a member terminal and, if it was the last one, claim the trigger.

    Returns ``changed`` (this call moved the member), ``completed``,
    ``failed``, ``expected``, ``is_triggering`` and ``trigger_state``.  A
    member that was already terminal is left untouched and never claims
    the trigger.  When the last member lands and none completed, the
    group moves to ``all_failed`` in the same transaction.
    """
    if status not in _TERMINAL:
        raise ValueError(f"Invalid terminal status: {status}")
    pool = await db.pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            group = await conn.fetchrow(
                "SELECT * FROM fan_in_groups WHERE id = $1 FOR UPDATE",
                group_id,
            )
            if group is None:
                raise ValueError(f"Fan-in group {group_id} not found")

            moved = await conn.fetchrow(
                """
                UPDATE fan_in_members
                   SET status = $3, payload = $4::jsonb, error = $5, completed_at = now()
                 WHERE group_id = $1 AND member_id = $2 AND status IN ('pending', 'running')
                RETURNING member_id
                """,
                group_id,
                member_id,
                status,
                json.dumps(payload) if payload is not None else None,
                error,
            )
            if moved is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM fan_in_members WHERE group_id = $1 AND member_id = $2",
                    group_id,
                    member_id,
                )
                if exists is None:
                    raise ValueError(f"Member {member_id!r} is not part of fan-in group {group_id}")

            completed, failed = await _counts(conn, group_id)
            expected = int(group["expected_count"])
            state = group["trigger_state"]

            is_triggering = False
            if moved is not None and completed + failed == expected:
                if completed > 0:
                    claimed = await conn.fetchval(
                        """
                        UPDATE fan_in_groups
                           SET trigger_state = 'triggered', triggered_at = now(), updated_at = now()
                         WHERE id = $1 AND triggered_at IS NULL
                        RETURNING id
                        """,
                        group_id,
                    )
                    is_triggering = claimed is not None
                    if is_triggering:
                        state = "triggered"
                elif await _close_all_failed(conn, group_id):
                    state = "all_failed"

    return {
        "changed": moved is not None,
        "completed": completed,
        "failed": failed,
        "expected": expected,
        "is_triggering": is_triggering,
        "trigger_state": state,
    }


async def _close_all_failed(conn, group_id: UUID) -> bool:
    """Move a waiting group whose every member failed to ``all_failed``."""
    closed = await conn.fetchval(
        """
        UPDATE fan_in_groups
           SET trigger_state = 'all_failed', updated_at = now()
         WHERE id = $1 AND trigger_state = 'waiting'
        RETURNING id
        """,
        group_id,
    )
    return closed is not None


async def claim_retry(db: Database, group_id: UUID) -> dict:
    """Re-derive completion from member rows and re-claim a failed trigger.

    A group whose every member failed is closed as ``all_failed`` and is
    never claimed.
    """
    pool = await db.pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            group = await conn.fetchrow(
                "SELECT * FROM fan_in_groups WHERE id = $1 FOR UPDATE",
                group_id,
            )
            if group is None:
                raise ValueError(f"Fan-in group {group_id} not found")

            completed, failed = await _counts(conn, group_id)
            expected = int(group["expected_count"])
            state = group["trigger_state"]

            is_triggering = False
            if completed + failed == expected and completed > 0:
                claimed = await conn.fetchval(
                    """
                    UPDATE fan_in_groups
                       SET trigger_state = 'triggered',
                           triggered_at = now(),
                           trigger_error = NULL,
                           updated_at = now()
                     WHERE id = $1 AND trigger_state IN ('waiting', 'trigger_failed')
                    RETURNING id
                    """,
                    group_id,
                )
                is_triggering = claimed is not None
                if is_triggering:
                    state = "triggered"
            elif completed + failed == expected and await _close_all_failed(conn, group_id):
                state = "all_failed"

    return {
        "changed": False,
        "completed": completed,
        "failed": failed,
        "expected": expected,
        "is_triggering": is_triggering,
        "trigger_state": state,
    }


async def mark_trigger_failed(db: Database, group_id: UUID, error: str) -> None:
    """Record that the downstream action did not start.  Members are untouched."""
    pool = await db.pool()
    await pool.execute(
        """
        UPDATE fan_in_groups
           SET trigger_state = 'trigger_failed', trigger_error = $2, updated_at = now()
         WHERE id = $1 AND trigger_state = 'triggered'
        """,
        group_id,
        error[:4000],
    )
