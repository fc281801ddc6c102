"""Tool registry — maps tool names to handlers with schema validation.

The ``Registry`` is a plain class (not a singleton) so tests can create
fresh instances.  The composition root builds one and registers the
tools it needs via ``relay.services.tools.register_builtin_tools``.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from relay_ide.contracts import ToolKind, ToolResult
from relay_ide.errors import ToolExecutionError, ToolNotFound

logger = logging.getLogger(__name__)


@dataclass
class _ToolEntry:
    """Internal record for a registered tool."""

    name: str
    handler: Callable
    request_model: type[BaseModel]
    description: str
    kind: ToolKind
    definition: dict[str, Any] = field(default_factory=dict)


class Registry:
    """Tool registry with schema-validated dispatch.

    Usage::

        reg = Registry()
        reg.register("read_file", handler_fn, ReadFileRequest, "Read a file ...")
        result = await reg.dispatch("read_file", {"path": "foo.py"}, context)
    """

    def __init__(self) -> None:
        self._tools: dict[str, _ToolEntry] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        handler: Callable,
        request_model: type[BaseModel],
        description: str,
        *,
        kind: ToolKind = ToolKind.READ_ONLY,
    ) -> None:
        """Register a tool with its handler and request schema.

        Raises ``ValueError`` if a tool with the same name is already
        registered.
        """
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")

        self._tools[name] = _ToolEntry(
            name=name,
            handler=handler,
            request_model=request_model,
            description=description,
            kind=kind,
            definition=_build_tool_definition(name, description, request_model),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, name: str, params: dict[str, Any], context: Any) -> ToolResult:
        """Validate *params*, call the tool handler, and return a
        ``ToolResult`` with measured duration.

        * Unknown tool name → raises ``ToolNotFound``
        * Invalid params → ``ToolResult.fail`` with validation details
        * ``ToolExecutionError`` → ``ToolResult.fail`` with its message
        * Any other handler exception → ``ToolResult.fail``, logged with traceback
        """
        start = time.perf_counter()

        entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFound(name, list(self._tools.keys()))

        # Validate input ------------------------------------------------
        try:
            validated = entry.request_model.model_validate(params)
        except ValidationError as exc:
            return ToolResult.fail(
                f"Error: invalid input for '{name}': {_summarise_validation(exc)}",
                duration_ms=_elapsed_ms(start),
            )

        # Call handler ---------------------------------------------------
        try:
            if inspect.iscoroutinefunction(entry.handler):
                result = await entry.handler(validated, context)
            else:
                result = entry.handler(validated, context)
        except ToolExecutionError as exc:
            return ToolResult.fail(f"Error: {exc}", duration_ms=_elapsed_ms(start))
        except Exception as exc:
            logger.exception("Tool '%s' raised unexpectedly", name)
            return ToolResult.fail(
                f"Error executing {name}: {exc}", duration_ms=_elapsed_ms(start)
            )

        elapsed = _elapsed_ms(start)
        if isinstance(result, ToolResult):
            return ToolResult(success=result.success, output=result.output, duration_ms=elapsed)
        return ToolResult.ok(str(result), duration_ms=elapsed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_tools(self) -> list[dict[str, Any]]:
        """Return Anthropic-compatible tool definitions for all
        registered tools.
        """
        return [entry.definition for entry in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def kind_of(self, name: str) -> ToolKind | None:
        entry = self._tools.get(name)
        return entry.kind if entry else None


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _summarise_validation(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


# Keywords passed through to providers; everything else pydantic emits
# (title, minLength, $defs ...) is dropped.
_SCHEMA_KEYS = ("type", "description", "default", "enum", "items", "properties", "required")


def _clean_schema(node: dict[str, Any], defs: dict[str, Any]) -> dict[str, Any]:
    """Provider-friendly copy of one JSON-schema node.

    ``$ref`` pointers into ``$defs`` are inlined, and ``Optional[T]``
    (``anyOf: [T, null]``) collapses to ``T`` with the outer description
    and default kept.
    """
    if "$ref" in node:
        target = defs[node["$ref"].rsplit("/", 1)[-1]]
        merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
        return _clean_schema(merged, defs)

    if "anyOf" in node:
        options = [opt for opt in node["anyOf"] if opt.get("type") != "null"]
        outer = {k: v for k, v in node.items() if k != "anyOf"}
        if len(options) == 1:
            return _clean_schema({**options[0], **outer}, defs)
        cleaned = _clean_schema(outer, defs)
        cleaned["anyOf"] = [_clean_schema(opt, defs) for opt in options]
        return cleaned

    cleaned: dict[str, Any] = {}
    for key in _SCHEMA_KEYS:
        if key not in node:
            continue
        value = node[key]
        if key == "default" and value is None:
            continue
        if key == "items":
            value = _clean_schema(value, defs)
        elif key == "properties":
            value = {name: _clean_schema(sub, defs) for name, sub in value.items()}
        cleaned[key] = value
    return cleaned


def _build_tool_definition(
    name: str, description: str, request_model: type[BaseModel]
) -> dict[str, Any]:
    """Build an Anthropic-compatible tool definition from a Pydantic model."""
    schema = request_model.model_json_schema()
    defs = schema.get("$defs", {})
    properties = {
        prop_name: _clean_schema(prop_schema, defs)
        for prop_name, prop_schema in schema.get("properties", {}).items()
    }

    return {
        "name": name,
        "description": description,
        "input_schema": {
            "type": "object",
            "properties": properties,
            "required": schema.get("required", []),
        },
    }
