"""Tool dispatcher — run a named tool for a session and always return text.

``ToolDispatcher.execute(name, input, context)`` is the single entry
point the protocol enforcer uses.  Every call returns a
``ToolResult(success, output)``; unknown tools, invalid input, sandbox
escapes, sensitive reads and exact-match misses all come back as failed
results with a plain-text explanation for the agent.  Failures are never
retried.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

from relay_ide.contracts import ToolKind, ToolResult
from relay_ide.errors import ToolNotFound
from relay_ide.registry import Registry
from relay_ide.workspace import Workspace, WorkspacePool

if TYPE_CHECKING:
    from relay.services.turn_log import TurnLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Everything a tool may touch for one call.

    ``alt_root`` is an isolated copy of the workspace (e.g. a git
    worktree); when set, every path resolves against it instead of
    ``root``.
    """

    root: str
    session_id: UUID | None = None
    alt_root: str | None = None
    turn_id: UUID | None = None
    context_type: str = ""
    context_id: str = ""
    turn_log: TurnLog | None = None
    workspace: Workspace | None = None

    @property
    def effective_root(self) -> str:
        return self.alt_root or self.root

    def resolve(self, rel_path: str) -> Path:
        ws = self.workspace or Workspace(self.effective_root)
        return ws.resolve(rel_path)

    def get_workspace(self) -> Workspace:
        return self.workspace or Workspace(self.effective_root)


class ToolDispatcher:
    """Validated dispatch over a :class:`Registry` with per-root workspaces."""

    def __init__(self, registry: Registry, workspaces: WorkspacePool) -> None:
        self._registry = registry
        self._workspaces = workspaces

    @property
    def registry(self) -> Registry:
        return self._registry

    def kind_of(self, name: str) -> ToolKind | None:
        return self._registry.kind_of(name)

    def tool_definitions(self) -> list[dict[str, Any]]:
        return self._registry.list_tools()

    async def execute(self, name: str, tool_input: dict, context: ToolContext) -> ToolResult:
        """Run *name* with *tool_input*; never raises for tool-level failures."""
        try:
            ws = self._workspaces.get(context.effective_root)
        except ValueError as exc:
            logger.error("Session %s: unusable sandbox root: %s", context.session_id, exc)
            return ToolResult.fail(f"Error: {exc}")

        bound = dataclasses.replace(context, workspace=ws)
        kind = self._registry.kind_of(name)

        try:
            result = await self._registry.dispatch(name, tool_input, bound)
        except ToolNotFound as exc:
            logger.warning("Session %s: unknown tool %r", context.session_id, name)
            return ToolResult.fail(f"Error: {exc}")

        log = logger.info if result.success else logger.warning
        log(
            "Session %s: %s tool %s -> %s (%dms)",
            context.session_id,
            kind.value if kind else "?",
            name,
            "ok" if result.success else "failed",
            result.duration_ms,
        )
        return result
