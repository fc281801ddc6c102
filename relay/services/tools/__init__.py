"""Built-in agent tools and their registration."""

from relay.services.tools import checkpoint, editing, filesystem
from relay_ide.contracts import (
    AddTodoRequest,
    CheckTodoRequest,
    EditFileRequest,
    GlobSearchRequest,
    GrepRequest,
    ListDirectoryRequest,
    MultiEditRequest,
    ReadFileRequest,
    TakeNoteRequest,
    ToolKind,
    WriteFileRequest,
)
from relay_ide.registry import Registry

_BUILTIN = (
    (
        "read_file",
        filesystem.read_file,
        ReadFileRequest,
        ToolKind.READ_ONLY,
        "Read a file from the workspace. Optionally pass start_line/end_line "
        "(1-based, inclusive) to read part of it.",
    ),
    (
        "list_directory",
        filesystem.list_directory,
        ListDirectoryRequest,
        ToolKind.READ_ONLY,
        "List files and folders in a workspace directory. Folders end with '/'.",
    ),
    (
        "grep",
        filesystem.grep,
        GrepRequest,
        ToolKind.READ_ONLY,
        "Search file contents with a regular expression (case-insensitive). "
        "Returns path:line: snippet for each match.",
    ),
    (
        "glob_search",
        filesystem.glob_search,
        GlobSearchRequest,
        ToolKind.READ_ONLY,
        "Find files whose relative path matches a glob such as 'src/**/*.py'.",
    ),
    (
        "write_file",
        filesystem.write_file,
        WriteFileRequest,
        ToolKind.MUTATING,
        "Create or overwrite a file with the given content.",
    ),
    (
        "edit_file",
        editing.edit_file,
        EditFileRequest,
        ToolKind.MUTATING,
        "Replace old_string with new_string. old_string must match exactly and "
        "appear once unless replace_all is true.",
    ),
    (
        "multi_edit",
        editing.multi_edit,
        MultiEditRequest,
        ToolKind.MUTATING,
        "Apply several exact-match edits to one file in order. Each edit sees "
        "the result of the previous one. If any edit fails, none are applied.",
    ),
    (
        "take_note",
        checkpoint.take_note,
        TakeNoteRequest,
        ToolKind.CHECKPOINT,
        "Save a note that will be shown to you at the start of every later turn.",
    ),
    (
        "add_todo",
        checkpoint.add_todo,
        AddTodoRequest,
        ToolKind.CHECKPOINT,
        "Add todo items to your persistent checklist.",
    ),
    (
        "check_todo",
        checkpoint.check_todo,
        CheckTodoRequest,
        ToolKind.CHECKPOINT,
        "Mark todo items as done by id.",
    ),
)


def register_builtin_tools(registry: Registry) -> Registry:
    """Register every built-in tool on *registry* and return it."""
    for name, handler, model, kind, description in _BUILTIN:
        registry.register(name, handler, model, description, kind=kind)
    return registry
