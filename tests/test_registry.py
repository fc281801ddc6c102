"""Tests for relay_ide.registry — schema-validated tool dispatch."""

from __future__ import annotations

import pytest
from pydantic import BaseModel, Field

from relay.services.tools import register_builtin_tools
from relay_ide.contracts import ToolKind, ToolResult
from relay_ide.errors import ToolExecutionError, ToolNotFound
from relay_ide.registry import Registry


class EchoRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Text to echo")
    times: int = Field(1, ge=1, description="Repeat count")


def _echo(req: EchoRequest, ctx) -> str:
    return req.text * req.times


async def _async_echo(req: EchoRequest, ctx) -> str:
    return f"async:{req.text}"


def _refuse(req: EchoRequest, ctx) -> str:
    raise ToolExecutionError("refused on purpose")


def _crash(req: EchoRequest, ctx) -> str:
    raise RuntimeError("boom")


@pytest.fixture
def registry() -> Registry:
    reg = Registry()
    reg.register("echo", _echo, EchoRequest, "Echo text back")
    reg.register("async_echo", _async_echo, EchoRequest, "Echo asynchronously")
    reg.register("refuse", _refuse, EchoRequest, "Always refuses", kind=ToolKind.MUTATING)
    reg.register("crash", _crash, EchoRequest, "Always crashes")
    return reg


class TestRegister:
    def test_duplicate_name(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.register("echo", _echo, EchoRequest, "again")

    def test_introspection(self, registry):
        assert registry.has_tool("echo")
        assert not registry.has_tool("nope")
        assert registry.tool_names() == ["echo", "async_echo", "refuse", "crash"]
        assert registry.kind_of("echo") is ToolKind.READ_ONLY
        assert registry.kind_of("refuse") is ToolKind.MUTATING
        assert registry.kind_of("nope") is None

    def test_definition_shape(self, registry):
        definition = registry.list_tools()[0]
        assert definition["name"] == "echo"
        assert definition["description"] == "Echo text back"
        schema = definition["input_schema"]
        assert schema["type"] == "object"
        assert schema["required"] == ["text"]
        assert schema["properties"]["text"] == {"type": "string", "description": "Text to echo"}
        assert schema["properties"]["times"]["default"] == 1


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_handler(self, registry):
        result = await registry.dispatch("echo", {"text": "ab", "times": 2}, None)
        assert result.success
        assert result.output == "abab"

    @pytest.mark.asyncio
    async def test_async_handler(self, registry):
        result = await registry.dispatch("async_echo", {"text": "x"}, None)
        assert result.output == "async:x"

    @pytest.mark.asyncio
    async def test_unknown_tool_raises(self, registry):
        with pytest.raises(ToolNotFound) as exc_info:
            await registry.dispatch("nope", {}, None)
        assert "echo" in exc_info.value.available_tools

    @pytest.mark.asyncio
    async def test_invalid_input(self, registry):
        result = await registry.dispatch("echo", {"times": 0}, None)
        assert not result.success
        assert result.output.startswith("Error: invalid input for 'echo'")
        assert "text" in result.output
        assert "times" in result.output

    @pytest.mark.asyncio
    async def test_tool_error_becomes_failed_result(self, registry):
        result = await registry.dispatch("refuse", {"text": "x"}, None)
        assert not result.success
        assert result.output == "Error: refused on purpose"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failed_result(self, registry):
        result = await registry.dispatch("crash", {"text": "x"}, None)
        assert not result.success
        assert result.output == "Error executing crash: boom"

    @pytest.mark.asyncio
    async def test_handler_result_passes_through(self):
        reg = Registry()
        reg.register("soft_fail", lambda req, ctx: ToolResult.fail("nope"), EchoRequest, "x")
        result = await reg.dispatch("soft_fail", {"text": "x"}, None)
        assert not result.success
        assert result.output == "nope"
        assert result.duration_ms >= 0


class OptionalRequest(BaseModel):
    limit: int | None = Field(None, ge=1, description="Optional cap")


class TestBuiltinSchemas:
    @pytest.fixture
    def definitions(self) -> dict:
        reg = register_builtin_tools(Registry())
        return {d["name"]: d["input_schema"] for d in reg.list_tools()}

    def test_no_unresolved_refs(self, definitions):
        def walk(node):
            if isinstance(node, dict):
                assert "$ref" not in node
                assert "$defs" not in node
                assert "anyOf" not in node
                for value in node.values():
                    walk(value)
            elif isinstance(node, list):
                for value in node:
                    walk(value)

        walk(definitions)

    def test_nested_models_inlined(self, definitions):
        items = definitions["multi_edit"]["properties"]["edits"]["items"]
        assert items["type"] == "object"
        assert set(items["properties"]) == {"old_string", "new_string", "replace_all"}
        assert items["properties"]["replace_all"]["type"] == "boolean"
        assert items["required"] == ["old_string", "new_string"]

        todo = definitions["add_todo"]["properties"]["items"]["items"]
        assert todo["type"] == "object"
        assert set(todo["properties"]) == {"title", "description"}
        assert todo["required"] == ["title"]

    def test_optional_collapses_to_inner_type(self, definitions):
        start = definitions["read_file"]["properties"]["start_line"]
        assert start == {"type": "integer", "description": "First line to return (1-based)"}

    def test_every_property_typed(self, definitions):
        for tool, schema in definitions.items():
            for prop, sub in schema["properties"].items():
                assert "type" in sub, f"{tool}.{prop}"

    def test_optional_on_custom_model(self):
        reg = Registry()
        reg.register("opt", _echo, OptionalRequest, "x")
        prop = reg.list_tools()[0]["input_schema"]["properties"]["limit"]
        assert prop == {"type": "integer", "description": "Optional cap"}
