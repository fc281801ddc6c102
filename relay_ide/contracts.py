"""Tool runtime contracts — Pydantic models for tool requests and results.

Every tool communicates through these models.  Results are always
human-readable text because they become conversation content for a
model.  All models are frozen (immutable after creation).
"""

from __future__ import annotations

import enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------


class LineRange(BaseModel):
    """Inclusive line range within a file."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=1, description="Start line (1-based, inclusive)")
    end: int = Field(..., ge=1, description="End line (1-based, inclusive)")

    @model_validator(mode="after")
    def _ordered(self) -> LineRange:
        if self.end < self.start:
            raise ValueError(f"end ({self.end}) must be >= start ({self.start})")
        return self


class Edit(BaseModel):
    """A single exact-match text replacement."""

    model_config = ConfigDict(frozen=True)

    old_string: str = Field(..., description="Exact text to replace")
    new_string: str = Field(..., description="Replacement text")
    replace_all: bool = Field(
        False, description="Replace every occurrence instead of requiring a unique match"
    )


class PostWriteHook(BaseModel):
    """A command run after a mutating tool writes a file.

    ``command`` may use the placeholders ``%PATH%``, ``%ABSOLUTE_PATH%``,
    ``%DIRNAME%`` and ``%FILENAME%``.  A failing ``block`` hook makes the
    tool restore the previous content; a failing ``warn`` hook does not.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    glob: str = "*"
    cwd: str | None = None
    on_failure: Literal["block", "warn"] = "warn"


class ToolKind(str, enum.Enum):
    """How a tool interacts with session state."""

    READ_ONLY = "read_only"
    MUTATING = "mutating"
    CHECKPOINT = "checkpoint"


# ---------------------------------------------------------------------------
# Tool result
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Outcome of one tool invocation: ``{success, output}``.

    Use the ``ok`` / ``fail`` factory class methods for clean construction.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    output: str = ""
    duration_ms: int = 0

    @classmethod
    def ok(cls, output: str, *, duration_ms: int = 0) -> ToolResult:
        """Create a successful result."""
        return cls(success=True, output=output, duration_ms=duration_ms)

    @classmethod
    def fail(cls, output: str, *, duration_ms: int = 0) -> ToolResult:
        """Create a failed result."""
        return cls(success=False, output=output, duration_ms=duration_ms)


# ---------------------------------------------------------------------------
# Per-tool request models
# ---------------------------------------------------------------------------


class ToolRequest(BaseModel):
    """Base for every tool input — carries the agent's stated rationale."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    reason: str = Field("", description="Why this tool is being called")


class ReadFileRequest(ToolRequest):
    path: str = Field(..., min_length=1, description="Relative path to the file")
    start_line: int | None = Field(None, ge=1, description="First line to return (1-based)")
    end_line: int | None = Field(None, ge=1, description="Last line to return (inclusive)")


class ListDirectoryRequest(ToolRequest):
    path: str = Field(".", description="Relative directory path")


class GrepRequest(ToolRequest):
    pattern: str = Field(..., min_length=1, description="Regex (falls back to literal)")
    glob: str = Field("*", description="Filename glob filter, e.g. '*.py'")
    path: str = Field(".", description="Directory to search under")


class GlobSearchRequest(ToolRequest):
    pattern: str = Field(..., min_length=1, description="Glob such as 'src/**/*.py'")


class WriteFileRequest(ToolRequest):
    path: str = Field(..., min_length=1, description="Relative path to write")
    content: str = Field(..., description="Full file content")


class EditFileRequest(ToolRequest):
    path: str = Field(..., min_length=1, description="Relative path of the file to edit")
    old_string: str = Field(..., description="Exact text to replace")
    new_string: str = Field(..., description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence")


class MultiEditRequest(ToolRequest):
    path: str = Field(..., min_length=1, description="Relative path of the file to edit")
    edits: list[Edit] = Field(..., min_length=1, description="Edits applied in order")


class TakeNoteRequest(ToolRequest):
    content: str = Field(..., min_length=1, description="Note to keep across turns")


class TodoItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    description: str = ""


class AddTodoRequest(ToolRequest):
    items: list[TodoItem] = Field(..., min_length=1, description="Todos to add")


class CheckTodoRequest(ToolRequest):
    ids: list[str] = Field(..., min_length=1, description="Todo ids to mark done")
