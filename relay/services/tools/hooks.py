"""Post-write hooks — operator-configured commands run after a file mutation.

Hooks come from ``settings.POST_WRITE_HOOKS`` and run in order through
``sh -c`` in the sandbox root (or the hook's ``cwd`` under it).  Only
hooks whose glob matches the written path run.  A failing ``block``
hook stops the chain and reports ``blocked`` so the calling tool can put
the previous content back; a failing ``warn`` hook only adds output.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import posixpath
import shlex
from dataclasses import dataclass
from pathlib import Path

from relay.config import settings
from relay_ide.contracts import PostWriteHook

logger = logging.getLogger(__name__)

MAX_HOOK_OUTPUT_CHARS = 10_000

# Env vars safe to propagate to hook commands (no secrets).
_SAFE_ENV_KEYS: tuple[str, ...] = (
    "PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "VIRTUAL_ENV",
)


@dataclass(frozen=True)
class HookRun:
    """Combined outcome of every hook that ran for one write."""

    output: str = ""
    blocked: bool = False


def matching_hooks(rel_path: str, hooks: list[PostWriteHook]) -> list[PostWriteHook]:
    basename = posixpath.basename(rel_path)
    return [
        h for h in hooks
        if fnmatch.fnmatch(rel_path, h.glob) or fnmatch.fnmatch(basename, h.glob)
    ]


def substitute_placeholders(command: str, rel_path: str, root: Path) -> str:
    """Fill in path placeholders, shell-quoted since paths come from the model."""
    values = {
        "%ABSOLUTE_PATH%": str(root / rel_path),
        "%PATH%": rel_path,
        "%DIRNAME%": posixpath.dirname(rel_path) or ".",
        "%FILENAME%": posixpath.basename(rel_path),
    }
    for placeholder, value in values.items():
        command = command.replace(placeholder, shlex.quote(value))
    return command


def _safe_env() -> dict[str, str]:
    env: dict[str, str] = {}
    for key in _SAFE_ENV_KEYS:
        val = os.environ.get(key)
        if val:
            env[key] = val
    return env


def _clip(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    if len(text) > MAX_HOOK_OUTPUT_CHARS:
        text = text[:MAX_HOOK_OUTPUT_CHARS] + "\n[... truncated ...]"
    return text


async def _execute(command: str, cwd: Path, timeout_s: float) -> tuple[int, str, str, bool]:
    """Run *command*; returns ``(exit_code, stdout, stderr, timed_out)``."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "sh", "-c", command,
            cwd=str(cwd),
            env=_safe_env(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return 127, "", f"Could not start hook: {exc}", False

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "", "", True
    return proc.returncode if proc.returncode is not None else -1, _clip(out), _clip(err), False


async def run_post_write_hooks(
    root: Path,
    rel_path: str,
    hooks: list[PostWriteHook] | None = None,
    *,
    timeout_s: float | None = None,
) -> HookRun:
    """Run every hook matching *rel_path*, stopping at the first blocking failure."""
    configured = settings.POST_WRITE_HOOKS if hooks is None else hooks
    selected = matching_hooks(rel_path, configured)
    if not selected:
        return HookRun()

    timeout = timeout_s or settings.POST_WRITE_HOOK_TIMEOUT_S
    sections: list[str] = []
    blocked = False
    for hook in selected:
        command = substitute_placeholders(hook.command, rel_path, root)
        cwd = root / hook.cwd if hook.cwd else root
        logger.info("Hook %r for %s: %s (cwd: %s)", hook.name, rel_path, command, cwd)
        code, out, err, timed_out = await _execute(command, cwd, timeout)

        lines = [f"[Hook: {hook.name}]"]
        lines.extend(part for part in (out, err) if part)
        if timed_out:
            lines.append(f"Hook timed out after {timeout:g} seconds")
        elif code != 0:
            lines.append(f"Exit code: {code}")
        sections.append("\n".join(lines))

        if code == 0 and not timed_out:
            continue
        if hook.on_failure == "block":
            logger.warning("Hook %r failed for %s (exit %s); blocking", hook.name, rel_path, code)
            blocked = True
            break
        logger.warning("Hook %r failed for %s (exit %s); continuing", hook.name, rel_path, code)

    return HookRun(output="\n\n".join(sections), blocked=blocked)
