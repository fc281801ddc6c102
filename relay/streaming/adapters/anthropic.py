"""Anthropic Messages API streaming events."""

from __future__ import annotations

from relay.streaming.events import (
    MessageEnd,
    MessageStart,
    StreamError,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
)
from relay.streaming.normalizer import ProviderAdapter, StreamState
from relay_ide.errors import StreamParseError

_IGNORED = frozenset({"ping"})


class AnthropicAdapter(ProviderAdapter):
    """Content blocks are addressed by ``index``; tool input arrives as
    ``input_json_delta`` fragments that may split anywhere, including
    inside a string literal.
    """

    name = "anthropic"

    def translate(self, payload: dict, state: StreamState) -> list[StreamEvent]:
        etype = payload.get("type", "")
        blocks: dict[int, str] = state.scratch.setdefault("blocks", {})

        if etype in _IGNORED:
            return []

        if etype == "message_start":
            msg = payload.get("message") or {}
            usage = msg.get("usage") or {}
            state.usage.input_tokens += usage.get("input_tokens", 0) or 0
            state.usage.cache_read_input_tokens += usage.get("cache_read_input_tokens", 0) or 0
            state.usage.cache_creation_input_tokens += usage.get("cache_creation_input_tokens", 0) or 0
            state.usage.model = msg.get("model", "") or state.usage.model
            state.started = True
            return [MessageStart(message_id=msg.get("id", ""), model=state.usage.model)]

        if etype == "content_block_start":
            block = payload.get("content_block") or {}
            index = payload.get("index", 0)
            btype = block.get("type")
            if btype == "tool_use":
                tool_id = block.get("id") or f"toolu_{index}"
                blocks[index] = tool_id
                return [state.open_tool(tool_id, block.get("name", ""))]
            if btype == "text" and block.get("text"):
                return [TextDelta(text=block["text"])]
            if btype == "thinking" and block.get("thinking"):
                return [ThinkingDelta(text=block["thinking"])]
            return []

        if etype == "content_block_delta":
            delta = payload.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta":
                return [TextDelta(text=delta.get("text", ""))] if delta.get("text") else []
            if dtype == "thinking_delta":
                return [ThinkingDelta(text=delta.get("thinking", ""))] if delta.get("thinking") else []
            if dtype == "input_json_delta":
                tool_id = blocks.get(payload.get("index", 0))
                if tool_id is None:
                    raise StreamParseError(self.name, "input_json_delta for a non-tool block", raw=payload)
                fragment = delta.get("partial_json", "")
                return [state.append_tool_args(tool_id, fragment)] if fragment else []
            if dtype == "signature_delta":
                return []
            raise StreamParseError(self.name, f"unknown delta type {dtype!r}", raw=payload)

        if etype == "content_block_stop":
            tool_id = blocks.pop(payload.get("index", 0), None)
            return [state.close_tool(tool_id)] if tool_id is not None else []

        if etype == "message_delta":
            usage = payload.get("usage") or {}
            state.usage.output_tokens += usage.get("output_tokens", 0) or 0
            stop = (payload.get("delta") or {}).get("stop_reason")
            if stop:
                state.stop_reason = stop
            return []

        if etype == "message_stop":
            return [MessageEnd(stop_reason=state.stop_reason)]

        if etype == "error":
            err = payload.get("error") or {}
            return [StreamError(message=err.get("message", "stream error"), code=err.get("type", ""))]

        raise StreamParseError(self.name, f"unknown event type {etype!r}", raw=payload)
