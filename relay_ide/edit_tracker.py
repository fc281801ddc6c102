"""Edit position tracking — which lines of the final content did a batch touch?

Pure functions.  Given the original content and an ordered list of
exact-match edits (each applied to the previous edit's output), compute
the 1-based line ranges in the *final* content that were replaced, so the
agent can be shown a context window around its own change.

This is not a diff algorithm: it relies on the same exact substring
matching that :mod:`relay_ide.patcher` enforces.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from pydantic import BaseModel, ConfigDict

from relay_ide.contracts import LineRange

DEFAULT_CONTEXT_LINES: int = 5
DEFAULT_MERGE_GAP: int = 10


class _EditLike(Protocol):
    old_string: str
    new_string: str
    replace_all: bool


class TrackedEdit(BaseModel):
    """Where one edit's replacements ended up in the final content.

    ``spans`` are half-open ``(start, end)`` character offsets.
    """

    model_config = ConfigDict(frozen=True)

    edit_index: int
    spans: list[tuple[int, int]]

    @property
    def offsets(self) -> list[int]:
        return [start for start, _ in self.spans]


class EditTrace(BaseModel):
    """Final content plus every tracked replacement."""

    model_config = ConfigDict(frozen=True)

    content: str
    edits: list[TrackedEdit]

    @property
    def offsets(self) -> list[int]:
        return [off for edit in self.edits for off in edit.offsets]

    def line_ranges(self) -> list[LineRange]:
        """Unmerged line ranges for every replacement, in edit order."""
        return [
            span_to_line_range(self.content, start, end)
            for edit in self.edits
            for start, end in edit.spans
        ]


# ---------------------------------------------------------------------------
# Offsets
# ---------------------------------------------------------------------------


def find_occurrences(content: str, needle: str) -> list[int]:
    """Start offsets of every non-overlapping occurrence, left to right."""
    if not needle:
        return []
    positions: list[int] = []
    pos = content.find(needle)
    while pos != -1:
        positions.append(pos)
        pos = content.find(needle, pos + len(needle))
    return positions


def line_number_at(content: str, offset: int) -> int:
    """1-based line number of the character at *offset*."""
    return content.count("\n", 0, offset) + 1


def replacement_offsets(occurrences: Sequence[int], old_len: int, new_len: int) -> list[int]:
    """Where each replacement starts once every earlier one in the same edit is applied.

    ``offset_i = occurrence_i + i * (new_len - old_len)``
    """
    drift = new_len - old_len
    return [pos + i * drift for i, pos in enumerate(occurrences)]


def _remap(offset: int, occurrences: Sequence[int], old_len: int, new_len: int, *, right: bool) -> int:
    """Map an offset from the pre-edit content into the post-edit content.

    Offsets inside a replaced region snap to the region's new start
    (``right=False``) or end (``right=True``).
    """
    drift = new_len - old_len
    for i, pos in enumerate(occurrences):
        if offset < pos + old_len:
            if offset <= pos:
                return offset + i * drift
            new_pos = pos + i * drift
            return new_pos + new_len if right else new_pos
    return offset + len(occurrences) * drift


def trace_edits(original: str, edits: Sequence[_EditLike]) -> EditTrace:
    """Apply *edits* sequentially and record where each replacement lands.

    Occurrences are always located in the content as it stands after the
    prior edits.  Spans recorded by earlier edits are carried through every
    later edit, so all spans are in final-content coordinates.  An edit
    whose target is absent contributes nothing.
    """
    current = original
    recorded: list[tuple[int, list[list[int]]]] = []

    for index, edit in enumerate(edits, start=1):
        old, new = edit.old_string, edit.new_string
        occurrences = find_occurrences(current, old)
        if not occurrences:
            recorded.append((index, []))
            continue
        if not edit.replace_all:
            occurrences = occurrences[:1]

        old_len, new_len = len(old), len(new)
        for _, spans in recorded:
            for span in spans:
                span[0] = _remap(span[0], occurrences, old_len, new_len, right=False)
                span[1] = _remap(span[1], occurrences, old_len, new_len, right=True)

        starts = replacement_offsets(occurrences, old_len, new_len)
        recorded.append((index, [[s, s + new_len] for s in starts]))

        if edit.replace_all:
            current = current.replace(old, new)
        else:
            current = current.replace(old, new, 1)

    return EditTrace(
        content=current,
        edits=[
            TrackedEdit(edit_index=index, spans=[(s, e) for s, e in spans])
            for index, spans in recorded
        ],
    )


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------


def span_to_line_range(content: str, start: int, end: int) -> LineRange:
    """Line range covered by a replacement that now occupies ``content[start:end]``."""
    first = line_number_at(content, start)
    return LineRange(start=first, end=first + content.count("\n", start, end))


def track_line_ranges(original: str, edits: Sequence[_EditLike]) -> tuple[str, list[LineRange]]:
    """Final content and the unmerged line ranges touched by *edits*."""
    trace = trace_edits(original, edits)
    return trace.content, trace.line_ranges()


def merge_line_ranges(ranges: Sequence[LineRange], gap: int = DEFAULT_MERGE_GAP) -> list[LineRange]:
    """Sort by start line, then merge ranges separated by at most *gap* lines.

    Idempotent: merging an already-merged list returns it unchanged.
    """
    if not ranges:
        return []

    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    merged: list[LineRange] = [ordered[0]]
    for rng in ordered[1:]:
        last = merged[-1]
        if last.end + gap >= rng.start:
            if rng.end > last.end:
                merged[-1] = LineRange(start=last.start, end=rng.end)
        else:
            merged.append(rng)
    return merged


def expand_context(rng: LineRange, total_lines: int, context: int = DEFAULT_CONTEXT_LINES) -> LineRange:
    """Widen *rng* by *context* lines each side, clamped to ``[1, total_lines]``."""
    total = max(total_lines, 1)
    start = max(1, rng.start - context)
    end = min(total, rng.end + context)
    return LineRange(start=min(start, end), end=end)


def build_context_output(
    path: str,
    content: str,
    ranges: Sequence[LineRange],
    *,
    context: int = DEFAULT_CONTEXT_LINES,
    gap: int = DEFAULT_MERGE_GAP,
) -> str:
    """Render ``### path:start-end`` blocks around each merged range."""
    if not ranges:
        return ""

    lines = content.split("\n")
    blocks: list[str] = []
    for rng in merge_line_ranges(ranges, gap):
        window = expand_context(rng, len(lines), context)
        body = "\n".join(lines[window.start - 1 : window.end])
        blocks.append(f"### {path}:{window.start}-{window.end}\n{body}")
    return "\n\n".join(blocks)
