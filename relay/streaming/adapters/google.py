"""Google Gemini ``streamGenerateContent`` chunks.

Function calls arrive whole inside a single part, so each one is emitted
as start, delta and end together.  Gemini does not always assign call
ids; a per-turn sequence number stands in when it does not.
"""

from __future__ import annotations

import json

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


class GoogleAdapter(ProviderAdapter):
    name = "google"

    def translate(self, payload: dict, state: StreamState) -> list[StreamEvent]:
        if "error" in payload:
            err = payload.get("error") or {}
            return [StreamError(message=err.get("message", "stream error"), code=str(err.get("status", "")))]

        candidates = payload.get("candidates")
        usage = payload.get("usageMetadata")
        if candidates is None and usage is None:
            raise StreamParseError(self.name, "chunk has neither candidates nor usage", raw=payload)

        if usage:
            state.usage.input_tokens = usage.get("promptTokenCount", 0) or 0
            state.usage.output_tokens = usage.get("candidatesTokenCount", 0) or 0

        events: list[StreamEvent] = []
        if not candidates:
            return events

        if not state.started:
            state.started = True
            state.usage.model = payload.get("modelVersion", "") or state.usage.model
            events.append(MessageStart(message_id=payload.get("responseId", ""), model=state.usage.model))

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                fc = part["functionCall"] or {}
                seq = state.scratch.get("call_seq", 0)
                state.scratch["call_seq"] = seq + 1
                name = fc.get("name", "")
                tool_id = fc.get("id") or f"{name or 'call'}_{seq}"
                events.append(state.open_tool(tool_id, name))
                events.append(state.append_tool_args(tool_id, json.dumps(fc.get("args") or {})))
                events.append(state.close_tool(tool_id))
            elif part.get("text"):
                if part.get("thought"):
                    events.append(ThinkingDelta(text=part["text"]))
                else:
                    events.append(TextDelta(text=part["text"]))

        finish = candidate.get("finishReason")
        if finish:
            state.stop_reason = finish
            events.append(MessageEnd(stop_reason=finish))
        return events
