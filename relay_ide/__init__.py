"""Headless tool runtime — exact-match edits, sandboxing, and tool dispatch.

Public API
----------
Contracts (Pydantic models)::

    ToolResult, ToolKind, ToolRequest, LineRange, Edit,
    ReadFileRequest, ListDirectoryRequest, GrepRequest, GlobSearchRequest,
    WriteFileRequest, EditFileRequest, MultiEditRequest,
    TakeNoteRequest, AddTodoRequest, CheckTodoRequest, TodoItem,

Registry::

    Registry  — register / dispatch / list_tools

Errors::

    IDEError, ToolExecutionError, SandboxViolation, SensitivePathError,
    EditMatchError, ToolNotFound, StreamParseError,

Workspace::

    Workspace, WorkspacePool

Edit tracking::

    EditTrace, TrackedEdit, trace_edits, find_occurrences,
    replacement_offsets, line_number_at, merge_line_ranges,
    expand_context, build_context_output,

Patch engine::

    EditResult, check_edit, apply_exact_edit, validate_edits,
    apply_edits_atomic,

Sensitivity gate::

    is_sensitive, ensure_not_sensitive
"""

from relay_ide.contracts import (
    AddTodoRequest,
    CheckTodoRequest,
    Edit,
    EditFileRequest,
    GlobSearchRequest,
    GrepRequest,
    LineRange,
    ListDirectoryRequest,
    MultiEditRequest,
    ReadFileRequest,
    TakeNoteRequest,
    TodoItem,
    ToolKind,
    ToolRequest,
    ToolResult,
    WriteFileRequest,
)
from relay_ide.edit_tracker import (
    EditTrace,
    TrackedEdit,
    build_context_output,
    expand_context,
    find_occurrences,
    line_number_at,
    merge_line_ranges,
    replacement_offsets,
    trace_edits,
)
from relay_ide.errors import (
    EditMatchError,
    IDEError,
    SandboxViolation,
    SensitivePathError,
    StreamParseError,
    ToolExecutionError,
    ToolNotFound,
)
from relay_ide.patcher import (
    EditResult,
    apply_edits_atomic,
    apply_exact_edit,
    check_edit,
    validate_edits,
)
from relay_ide.registry import Registry
from relay_ide.sensitivity import ensure_not_sensitive, is_sensitive
from relay_ide.workspace import Workspace, WorkspacePool

__all__ = [
    # Contracts
    "AddTodoRequest",
    "CheckTodoRequest",
    "Edit",
    "EditFileRequest",
    "GlobSearchRequest",
    "GrepRequest",
    "LineRange",
    "ListDirectoryRequest",
    "MultiEditRequest",
    "ReadFileRequest",
    "TakeNoteRequest",
    "TodoItem",
    "ToolKind",
    "ToolRequest",
    "ToolResult",
    "WriteFileRequest",
    # Edit tracking
    "EditTrace",
    "TrackedEdit",
    "build_context_output",
    "expand_context",
    "find_occurrences",
    "line_number_at",
    "merge_line_ranges",
    "replacement_offsets",
    "trace_edits",
    # Errors
    "EditMatchError",
    "IDEError",
    "SandboxViolation",
    "SensitivePathError",
    "StreamParseError",
    "ToolExecutionError",
    "ToolNotFound",
    # Patch engine
    "EditResult",
    "apply_edits_atomic",
    "apply_exact_edit",
    "check_edit",
    "validate_edits",
    # Registry
    "Registry",
    # Sensitivity
    "ensure_not_sensitive",
    "is_sensitive",
    # Workspace
    "Workspace",
    "WorkspacePool",
]
