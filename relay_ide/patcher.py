"""Patch engine — strict exact-match edits applied to source content.

An edit succeeds only when its target substring is found unambiguously
(or the caller opted into ``replace_all``).  There is no anchor search,
no similarity matching and no retry: silently picking the wrong
occurrence is worse than stopping.

Batches are all-or-nothing.  Every edit is checked against the content
as transformed by the edits before it; the first failure aborts the
whole batch and names the failing edit.

All operations work on strings (not files) — the caller is responsible
for reading and writing the filesystem.
"""

from __future__ import annotations

from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from relay_ide.contracts import Edit, LineRange
from relay_ide.edit_tracker import find_occurrences, trace_edits
from relay_ide.errors import EditMatchError


class EditResult(BaseModel):
    """Result of applying a batch of edits to content."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(default="", description="File path for context")
    pre_content: str
    post_content: str
    edits_applied: int = Field(..., ge=0)
    replacements: int = Field(..., ge=0, description="Total substitutions across all edits")
    line_ranges: list[LineRange] = Field(default_factory=list)


def check_edit(content: str, edit: Edit, *, path: str = "", index: int | None = None) -> list[int]:
    """Return the occurrence offsets *edit* will replace in *content*.

    Raises :class:`EditMatchError` when the target is empty, absent, or
    ambiguous without ``replace_all``.
    """
    if not edit.old_string:
        raise EditMatchError(path, "old_string must not be empty", edit_index=index)

    occurrences = find_occurrences(content, edit.old_string)
    if not occurrences:
        raise EditMatchError(path, f"old_string not found in {path or 'content'}", edit_index=index)
    if len(occurrences) > 1 and not edit.replace_all:
        raise EditMatchError(
            path,
            f"old_string found {len(occurrences)} times in {path or 'content'}. "
            "Set replace_all=true or include more surrounding context to make it unique",
            edit_index=index,
        )
    return occurrences if edit.replace_all else occurrences[:1]


def apply_exact_edit(content: str, edit: Edit, *, path: str = "") -> EditResult:
    """Apply one exact-match edit."""
    occurrences = check_edit(content, edit, path=path)
    trace = trace_edits(content, [edit])
    return EditResult(
        path=path,
        pre_content=content,
        post_content=trace.content,
        edits_applied=1,
        replacements=len(occurrences),
        line_ranges=trace.line_ranges(),
    )


def validate_edits(content: str, edits: Sequence[Edit], *, path: str = "") -> str:
    """Simulate *edits* in order and return the final content.

    Raises :class:`EditMatchError` carrying the 1-based index of the first
    edit that does not apply to the content left by its predecessors.
    """
    current = content
    for index, edit in enumerate(edits, start=1):
        check_edit(current, edit, path=path, index=index)
        if edit.replace_all:
            current = current.replace(edit.old_string, edit.new_string)
        else:
            current = current.replace(edit.old_string, edit.new_string, 1)
    return current


def apply_edits_atomic(content: str, edits: Sequence[Edit], *, path: str = "") -> EditResult:
    """Apply a batch of edits all-or-nothing.

    Nothing is returned (and so nothing can be written) unless every edit
    validates.  The result's ``line_ranges`` are unmerged and in
    final-content coordinates.
    """
    if not edits:
        raise EditMatchError(path, "No edits provided")

    validated = validate_edits(content, edits, path=path)
    trace = trace_edits(content, edits)
    # Tracking and validation walk the same sequence; diverging here is a bug.
    assert trace.content == validated

    return EditResult(
        path=path,
        pre_content=content,
        post_content=trace.content,
        edits_applied=len(edits),
        replacements=sum(len(e.spans) for e in trace.edits),
        line_ranges=trace.line_ranges(),
    )
