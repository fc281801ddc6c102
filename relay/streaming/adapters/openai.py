"""OpenAI chat-completions streaming chunks.

Tool calls are keyed by ``tool_calls[].index``; only the first fragment
of a call carries its ``id`` and ``function.name``.  Calls have no
explicit end marker, so every open call is closed, in index order, when
``finish_reason`` arrives.  With ``stream_options.include_usage`` the
final chunk has empty ``choices`` and only updates usage.
"""

from __future__ import annotations

from typing import ClassVar

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


class OpenAIAdapter(ProviderAdapter):
    name = "openai"

    # Delta field carrying reasoning text, for compatible APIs that stream it.
    reasoning_field: ClassVar[str | None] = None

    def translate(self, payload: dict, state: StreamState) -> list[StreamEvent]:
        if "error" in payload:
            err = payload.get("error") or {}
            return [StreamError(message=err.get("message", "stream error"), code=str(err.get("type", "")))]

        choices = payload.get("choices")
        if choices is None:
            raise StreamParseError(self.name, "chunk has no 'choices'", raw=payload)

        events: list[StreamEvent] = []
        calls: dict[int, str] = state.scratch.setdefault("calls", {})

        usage = payload.get("usage")
        if usage:
            state.usage.input_tokens = usage.get("prompt_tokens", 0) or 0
            state.usage.output_tokens = usage.get("completion_tokens", 0) or 0

        if not choices:
            return events

        if not state.started:
            state.started = True
            state.usage.model = payload.get("model", "") or state.usage.model
            events.append(MessageStart(message_id=payload.get("id", ""), model=state.usage.model))

        choice = choices[0]
        delta = choice.get("delta") or {}

        if self.reasoning_field and delta.get(self.reasoning_field):
            events.append(ThinkingDelta(text=delta[self.reasoning_field]))

        if delta.get("content"):
            events.append(TextDelta(text=delta["content"]))

        for tc in delta.get("tool_calls") or []:
            index = tc.get("index", 0)
            fn = tc.get("function") or {}
            tool_id = calls.get(index)
            if tool_id is None:
                tool_id = tc.get("id") or f"call_{index}"
                calls[index] = tool_id
                events.append(state.open_tool(tool_id, fn.get("name", "")))
            fragment = fn.get("arguments") or ""
            if fragment:
                events.append(state.append_tool_args(tool_id, fragment))

        finish = choice.get("finish_reason")
        if finish:
            for index in sorted(calls):
                events.append(state.close_tool(calls[index]))
            calls.clear()
            state.stop_reason = finish
            events.append(MessageEnd(stop_reason=finish))

        return events
