"""Checkpoint tools — take_note, add_todo, check_todo.

Notes and todos are the durable side-channel that survives context
compaction: they are rendered back to the agent at the start of every
later turn of the session.
"""

from __future__ import annotations

from uuid import UUID

from relay.services.tool_dispatcher import ToolContext
from relay_ide.contracts import AddTodoRequest, CheckTodoRequest, TakeNoteRequest
from relay_ide.errors import ToolExecutionError


def _require_log(ctx: ToolContext):
    if ctx.turn_log is None or ctx.session_id is None:
        raise ToolExecutionError("Checkpoint tools are only available inside a session")
    return ctx.turn_log


async def take_note(req: TakeNoteRequest, ctx: ToolContext) -> str:
    log = _require_log(ctx)
    await log.add_note(
        ctx.session_id, req.content, context_type=ctx.context_type, context_id=ctx.context_id
    )
    return "OK: Note saved"


async def add_todo(req: AddTodoRequest, ctx: ToolContext) -> str:
    log = _require_log(ctx)
    rows = await log.add_todos(
        ctx.session_id,
        [item.model_dump() for item in req.items],
        context_type=ctx.context_type,
        context_id=ctx.context_id,
    )
    lines = [f"- {row['title']} (id: {row['id']})" for row in rows]
    return f"OK: Added {len(rows)} todo(s)\n" + "\n".join(lines)


async def check_todo(req: CheckTodoRequest, ctx: ToolContext) -> str:
    log = _require_log(ctx)
    try:
        ids = [UUID(i) for i in req.ids]
    except ValueError as exc:
        raise ToolExecutionError(f"Invalid todo id: {exc}") from exc

    rows = await log.check_todos(ctx.session_id, ids)
    changed = {str(r["id"]) for r in rows}
    unknown = [i for i in req.ids if str(UUID(i)) not in changed]
    out = f"OK: Checked {len(rows)} todo(s)"
    if unknown:
        out += f"; already done or not found: {', '.join(unknown)}"
    return out
