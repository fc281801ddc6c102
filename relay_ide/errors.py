"""Tool runtime error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for structured logging, and has a readable
``__str__`` that is safe to hand back to the agent as tool output.
"""

from __future__ import annotations


class IDEError(Exception):
    """Base error for all tool runtime failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class ToolExecutionError(IDEError):
    """A tool ran but could not honour its contract.

    Surfaced to the agent as a failed tool result; never retried.
    """


class SandboxViolation(ToolExecutionError):
    """Path resolved outside the session's sandbox root."""

    def __init__(
        self,
        path: str,
        *,
        root: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.path = path
        self.root = root or ""
        self.reason = reason or "Resolved path is outside the sandbox root"

        detail: dict = {"path": path, "reason": self.reason}
        if root:
            detail["root"] = root

        super().__init__(f"Sandbox violation: {self.reason} (path={path!r})", detail=detail)


class SensitivePathError(ToolExecutionError):
    """Read refused because the path looks like a credential store."""

    def __init__(self, path: str, pattern: str) -> None:
        self.path = path
        self.pattern = pattern
        super().__init__(
            f"Access denied: '{path}' matches a sensitive file pattern and cannot be read",
            detail={"path": path, "pattern": pattern},
        )


class EditMatchError(ToolExecutionError):
    """An exact-match edit could not be applied.

    ``edit_index`` is 1-based so it can be echoed to the agent verbatim;
    it is ``None`` for single edits.
    """

    def __init__(self, file_path: str, reason: str, *, edit_index: int | None = None) -> None:
        self.file_path = file_path
        self.reason = reason
        self.edit_index = edit_index
        prefix = f"Edit {edit_index}: " if edit_index is not None else ""
        super().__init__(
            f"{prefix}{reason}",
            detail={"file_path": file_path, "edit_index": edit_index, "reason": reason},
        )


class ToolNotFound(IDEError):
    """Requested tool name is not registered."""

    def __init__(self, tool_name: str, available_tools: list[str]) -> None:
        self.tool_name = tool_name
        self.available_tools = available_tools
        super().__init__(
            f"Tool '{tool_name}' not found. Available: {', '.join(available_tools)}",
            detail={"tool_name": tool_name, "available_tools": available_tools},
        )


class StreamParseError(IDEError):
    """A provider chunk did not match the shape its adapter expects."""

    def __init__(self, provider: str, reason: str, *, raw: object = None) -> None:
        self.provider = provider
        self.reason = reason
        self.raw = raw
        raw_len = len(raw) if isinstance(raw, (str, bytes)) else None
        super().__init__(
            f"Unparseable {provider} chunk: {reason}",
            detail={"provider": provider, "reason": reason, "raw_length": raw_len},
        )
