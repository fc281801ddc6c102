"""Exact-match edit tools: edit_file and multi_edit.

Both read the file once, compute the full result in memory through
:mod:`relay_ide.patcher`, and write once.  A failed match raises before
anything is written, so a batch is all-or-nothing.  On success the agent
gets the lines around its change, merged into coherent blocks.

Files stored with CRLF line endings stay CRLF: the edit strings the model
sends (always LF) are converted to the file's style before matching.
"""

from __future__ import annotations

from relay.config import settings
from relay.services.tool_dispatcher import ToolContext
from relay.services.tools.filesystem import (
    commit_write,
    read_text,
    resolve_readable,
    with_hook_output,
)
from relay_ide.contracts import Edit, EditFileRequest, MultiEditRequest
from relay_ide.edit_tracker import build_context_output
from relay_ide.errors import EditMatchError, ToolExecutionError
from relay_ide.patcher import EditResult, apply_edits_atomic, apply_exact_edit


def line_ending(content: str) -> str:
    """``"\\r\\n"`` when every newline in *content* is CRLF, else ``"\\n"``."""
    crlf = content.count("\r\n")
    return "\r\n" if crlf and crlf == content.count("\n") else "\n"


def _to_style(text: str, newline: str) -> str:
    if newline == "\n":
        return text
    return text.replace("\r\n", "\n").replace("\n", newline)


def _restyle(edit: Edit, newline: str) -> Edit:
    if newline == "\n":
        return edit
    return Edit(
        old_string=_to_style(edit.old_string, newline),
        new_string=_to_style(edit.new_string, newline),
        replace_all=edit.replace_all,
    )


def _feedback(summary: str, result: EditResult) -> str:
    context = build_context_output(
        result.path,
        result.post_content.replace("\r\n", "\n"),
        result.line_ranges,
        context=settings.EDIT_CONTEXT_LINES,
        gap=settings.EDIT_MERGE_GAP_LINES,
    )
    return f"{summary}\n\n{context}" if context else summary


async def edit_file(req: EditFileRequest, ctx: ToolContext) -> str:
    """Replace one exact, unique occurrence (or all, with ``replace_all``)."""
    target = resolve_readable(ctx, req.path)
    content = read_text(target, req.path)

    edit = Edit(old_string=req.old_string, new_string=req.new_string, replace_all=req.replace_all)
    result = apply_exact_edit(content, _restyle(edit, line_ending(content)), path=req.path)
    hook_output = await commit_write(
        ctx, target, req.path, result.post_content, content.encode("utf-8")
    )

    noun = "occurrence" if result.replacements == 1 else "occurrences"
    summary = _feedback(f"OK: Replaced {result.replacements} {noun} in {req.path}", result)
    return with_hook_output(summary, hook_output)


async def multi_edit(req: MultiEditRequest, ctx: ToolContext) -> str:
    """Apply several edits in order; all succeed or none are written."""
    target = resolve_readable(ctx, req.path)
    content = read_text(target, req.path)
    newline = line_ending(content)

    try:
        result = apply_edits_atomic(
            content, [_restyle(e, newline) for e in req.edits], path=req.path
        )
    except EditMatchError as exc:
        raise ToolExecutionError(
            f"{exc}. None of the {len(req.edits)} edits were applied"
        ) from exc
    hook_output = await commit_write(
        ctx, target, req.path, result.post_content, content.encode("utf-8")
    )

    summary = _feedback(f"OK: Applied {result.edits_applied} edits to {req.path}", result)
    return with_hook_output(summary, hook_output)
