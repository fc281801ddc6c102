"""Workspace — sandboxed path resolution for one session root.

Provides:
- Safe path resolution (``resolve``) with boundary-safe containment
- Constant-time sandbox membership checks (``is_within``)
- Filtered recursive file iteration for search tools
- ``WorkspacePool``: an explicit, owned map of root → ``Workspace`` with
  a ``close()`` hook, held by the composition root instead of a
  module-level cache
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

from relay_ide.errors import SandboxViolation

logger = logging.getLogger(__name__)

DEFAULT_SKIP_DIRS: frozenset[str] = frozenset(
    {
        ".git",
        "__pycache__",
        "node_modules",
        ".venv",
        "venv",
        ".tox",
        "dist",
        "build",
        ".mypy_cache",
        ".pytest_cache",
    }
)

# Directories that must never be exposed to tool calls
BLOCKED_SEGMENTS: frozenset[str] = frozenset({".git"})


class Workspace:
    """Sandbox for one root directory.

    Parameters
    ----------
    root : str | Path
        Path to the workspace root directory.  Must exist and be a
        directory.

    Raises
    ------
    ValueError
        If *root* does not exist or is not a directory.
    """

    __slots__ = ("_root", "_root_str")

    def __init__(self, root: str | Path) -> None:
        path = Path(root).resolve()
        if not path.exists():
            raise ValueError(f"Workspace root does not exist: {root}")
        if not path.is_dir():
            raise ValueError(f"Workspace root is not a directory: {root}")

        self._root: Path = path
        self._root_str: str = str(path)

    @property
    def root(self) -> Path:
        """Resolved absolute path to the workspace root."""
        return self._root

    # -- Path resolution ----------------------------------------------------

    def resolve(self, rel_path: str) -> Path:
        """Resolve a relative path within the sandbox.

        Raises
        ------
        SandboxViolation
            If the path is empty, absolute, contains null bytes, traverses
            with ``..``, touches a blocked directory, or resolves outside
            the root (including through a symlink).
        """
        if not rel_path:
            raise SandboxViolation(rel_path or "", root=self._root_str, reason="Path is empty")

        if "\x00" in rel_path:
            raise SandboxViolation(rel_path, root=self._root_str, reason="Path contains null bytes")

        if os.path.isabs(rel_path):
            raise SandboxViolation(
                rel_path, root=self._root_str, reason="Absolute paths are not allowed"
            )

        components = rel_path.replace("\\", "/").split("/")
        if ".." in components:
            raise SandboxViolation(
                rel_path, root=self._root_str, reason="Path traversal with '..' is not allowed"
            )
        if any(c in BLOCKED_SEGMENTS for c in components):
            raise SandboxViolation(
                rel_path, root=self._root_str, reason="Path targets a blocked directory"
            )

        target = (self._root / rel_path).resolve()

        # Catches symlink escapes
        if not self.is_within(target):
            raise SandboxViolation(rel_path, root=self._root_str)

        return target

    def relative(self, path: Path) -> str:
        """Forward-slash path of *path* relative to the root."""
        return path.relative_to(self._root).as_posix()

    # -- Membership check ---------------------------------------------------

    def is_within(self, path: str | Path) -> bool:
        """Sandbox membership check (no I/O).

        Equal to the root, or prefixed by root + separator, so that a
        sibling such as ``/work/app-other`` never matches ``/work/app``.
        """
        normalised = os.path.normpath(str(path))
        root_norm = os.path.normpath(self._root_str)

        if normalised == root_norm:
            return True
        return normalised.startswith(root_norm + os.sep)

    # -- Iteration ----------------------------------------------------------

    def iter_files(
        self, start: Path | None = None, *, skip_dirs: frozenset[str] = DEFAULT_SKIP_DIRS
    ) -> Iterator[Path]:
        """Yield files under *start* (default: root) in sorted walk order."""
        base = start or self._root
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in skip_dirs)
            for fname in sorted(filenames):
                yield Path(dirpath) / fname


class WorkspacePool:
    """Owned registry of :class:`Workspace` objects keyed by resolved root."""

    def __init__(self) -> None:
        self._workspaces: dict[str, Workspace] = {}
        self._closed = False

    def get(self, root: str | Path) -> Workspace:
        if self._closed:
            raise RuntimeError("WorkspacePool is closed")
        key = str(Path(root).resolve())
        ws = self._workspaces.get(key)
        if ws is None:
            ws = Workspace(key)
            self._workspaces[key] = ws
        return ws

    def __len__(self) -> int:
        return len(self._workspaces)

    def close(self) -> None:
        """Drop every cached workspace; further ``get`` calls fail."""
        if self._workspaces:
            logger.debug("Releasing %d workspace(s)", len(self._workspaces))
        self._workspaces.clear()
        self._closed = True
