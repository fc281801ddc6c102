"""Filesystem tools — read_file, list_directory, grep, glob_search, write_file.

Each handler resolves paths through the session's sandbox, enforces size
limits, and returns text.  Contract failures raise
:class:`ToolExecutionError` subclasses, which the registry turns into
failed tool results.

File contents are handled byte-faithfully: text is strict UTF-8 with
line endings left exactly as stored, so an edit only changes the bytes
it targets.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import stat
import tempfile
from pathlib import Path

from relay.config import settings
from relay.services.tool_dispatcher import ToolContext
from relay.services.tools.hooks import run_post_write_hooks
from relay_ide.contracts import (
    GlobSearchRequest,
    GrepRequest,
    ListDirectoryRequest,
    ReadFileRequest,
    WriteFileRequest,
)
from relay_ide.errors import ToolExecutionError
from relay_ide.sensitivity import ensure_not_sensitive, is_sensitive
from relay_ide.workspace import DEFAULT_SKIP_DIRS, Workspace

logger = logging.getLogger(__name__)


def resolve_readable(ctx: ToolContext, rel_path: str) -> Path:
    """Resolve *rel_path* and refuse it if either name or target is sensitive."""
    target = ctx.resolve(rel_path)
    ensure_not_sensitive(rel_path)
    ensure_not_sensitive(ctx.get_workspace().relative(target))
    return target


def read_text(target: Path, rel_path: str, *, strict: bool = True) -> str:
    """Decode *target* as UTF-8 without newline translation.

    With ``strict`` (the default, used before any rewrite) undecodable
    bytes fail the call instead of being replaced.
    """
    if not target.exists():
        raise ToolExecutionError(f"File not found '{rel_path}'")
    if not target.is_file():
        raise ToolExecutionError(f"'{rel_path}' is not a file")
    try:
        raw = target.read_bytes()
    except OSError as exc:
        raise ToolExecutionError(f"Could not read '{rel_path}': {exc}") from exc
    if not strict:
        return raw.decode("utf-8", errors="replace")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ToolExecutionError(
            f"'{rel_path}' is not valid UTF-8 (byte {exc.start}); it cannot be edited as text"
        ) from exc


def atomic_write(target: Path, content: str | bytes) -> None:
    """Replace *target* in one step so readers never see a partial file.

    ``str`` content is encoded as UTF-8 verbatim.  An existing file keeps
    its permission bits.
    """
    data = content.encode("utf-8") if isinstance(content, str) else content
    target.parent.mkdir(parents=True, exist_ok=True)
    mode = stat.S_IMODE(target.stat().st_mode) if target.exists() else None
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


async def commit_write(
    ctx: ToolContext, target: Path, rel_path: str, content: str, previous: bytes | None
) -> str:
    """Write *content*, run post-write hooks, and roll back if one blocks.

    *previous* is the exact prior file content, or ``None`` when the file
    did not exist.  Returns the hook output (empty when no hook ran).
    """
    atomic_write(target, content)
    run = await run_post_write_hooks(ctx.get_workspace().root, rel_path)
    if not run.blocked:
        return run.output

    if previous is None:
        target.unlink(missing_ok=True)
    else:
        atomic_write(target, previous)
    logger.warning("Session %s: blocking hook failed, %s restored", ctx.session_id, rel_path)
    raise ToolExecutionError(f"Hook failed (blocking), file reverted:\n{run.output}")


def with_hook_output(summary: str, hook_output: str) -> str:
    return f"{summary}\n\n{hook_output}" if hook_output else summary


def read_file(req: ReadFileRequest, ctx: ToolContext) -> str:
    """Read a file, optionally a 1-based inclusive line range."""
    target = resolve_readable(ctx, req.path)
    content = read_text(target, req.path, strict=False)

    if req.start_line is not None or req.end_line is not None:
        lines = content.split("\n")
        start = req.start_line or 1
        end = min(req.end_line or len(lines), len(lines))
        if start > len(lines):
            raise ToolExecutionError(
                f"start_line {start} is past the end of '{req.path}' ({len(lines)} lines)"
            )
        if end < start:
            raise ToolExecutionError(f"end_line {end} is before start_line {start}")
        content = "\n".join(lines[start - 1 : end])

    limit = settings.MAX_READ_FILE_BYTES
    if len(content) > limit:
        content = content[:limit] + f"\n\n[... truncated at {limit} bytes ...]"
    return content


def list_directory(req: ListDirectoryRequest, ctx: ToolContext) -> str:
    """Names in a directory, '/' suffix for sub-directories."""
    target = ctx.resolve(req.path or ".")
    if not target.exists():
        raise ToolExecutionError(f"Directory not found '{req.path}'")
    if not target.is_dir():
        raise ToolExecutionError(f"'{req.path}' is not a directory")

    entries = []
    for child in sorted(target.iterdir()):
        if child.name in DEFAULT_SKIP_DIRS:
            continue
        entries.append(f"{child.name}/" if child.is_dir() else child.name)

    return "\n".join(entries) if entries else "(empty directory)"


def _searchable(ws: Workspace, full_path: Path) -> str | None:
    """Relative path of a file grep may open, or ``None`` to skip it.

    Symlinks are followed only when their target stays in the sandbox,
    and both the link name and the target must pass the sensitivity gate.
    """
    rel = ws.relative(full_path)
    if is_sensitive(rel):
        return None
    resolved = full_path.resolve()
    if not ws.is_within(resolved):
        logger.debug("grep: skipping %s, it resolves outside the sandbox", rel)
        return None
    if resolved != full_path and is_sensitive(ws.relative(resolved)):
        return None
    return rel


def grep(req: GrepRequest, ctx: ToolContext) -> str:
    """Regex search (literal fallback) across files matching ``glob``."""
    ws = ctx.get_workspace()
    base = ctx.resolve(req.path or ".")
    if not base.is_dir():
        raise ToolExecutionError(f"'{req.path}' is not a directory")

    try:
        regex = re.compile(req.pattern, re.IGNORECASE)
    except re.error:
        regex = re.compile(re.escape(req.pattern), re.IGNORECASE)

    cap = settings.MAX_SEARCH_RESULTS
    results: list[str] = []
    for full_path in ws.iter_files(base):
        if not fnmatch.fnmatch(full_path.name, req.glob):
            continue
        rel = _searchable(ws, full_path)
        if rel is None:
            continue
        try:
            lines = full_path.read_bytes().decode("utf-8", errors="replace").splitlines()
        except OSError:
            continue
        for i, line in enumerate(lines, 1):
            if regex.search(line):
                results.append(f"{rel}:{i}: {line.strip()[:120]}")
                if len(results) >= cap:
                    results.append(f"... (truncated at {cap} results)")
                    return "\n".join(results)

    if not results:
        return f"No matches found for '{req.pattern}'"
    return "\n".join(results)


def glob_search(req: GlobSearchRequest, ctx: ToolContext) -> str:
    """Relative paths of files matching a glob pattern."""
    ws = ctx.get_workspace()
    if req.pattern.startswith("/") or ".." in req.pattern.replace("\\", "/").split("/"):
        raise ToolExecutionError("Glob patterns must be relative and must not contain '..'")

    cap = settings.MAX_SEARCH_RESULTS
    matches: list[str] = []
    for path in sorted(ws.root.glob(req.pattern)):
        if not path.is_file() or not ws.is_within(path.resolve()):
            continue
        rel = ws.relative(path)
        if any(part in DEFAULT_SKIP_DIRS for part in rel.split("/")[:-1]):
            continue
        matches.append(rel)
        if len(matches) >= cap:
            matches.append(f"... (truncated at {cap} results)")
            break

    if not matches:
        return f"No files match '{req.pattern}'"
    return "\n".join(matches)


async def write_file(req: WriteFileRequest, ctx: ToolContext) -> str:
    """Create or overwrite a file."""
    target = ctx.resolve(req.path)
    limit = settings.MAX_WRITE_FILE_BYTES
    if len(req.content) > limit:
        raise ToolExecutionError(
            f"Content exceeds {limit} byte limit ({len(req.content)} bytes)"
        )
    if target.exists() and not target.is_file():
        raise ToolExecutionError(f"'{req.path}' exists and is not a file")

    previous = target.read_bytes() if target.exists() else None
    hook_output = await commit_write(ctx, target, req.path, req.content, previous)
    verb = "Overwrote" if previous is not None else "Created"
    return with_hook_output(f"OK: {verb} {req.path} ({len(req.content)} bytes)", hook_output)
