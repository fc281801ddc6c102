"""Canonical stream events — the provider-agnostic view of model output.

Every provider adapter translates its wire chunks into these types.  The
set is closed: consumers dispatch on ``event.type``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class MessageStart:
    message_id: str = ""
    model: str = ""
    type: str = field(default="message_start", init=False)


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: str = field(default="text_delta", init=False)


@dataclass(frozen=True)
class ThinkingDelta:
    text: str
    type: str = field(default="thinking_delta", init=False)


@dataclass(frozen=True)
class ToolUseStart:
    tool_call_id: str
    name: str
    type: str = field(default="tool_use_start", init=False)


@dataclass(frozen=True)
class ToolUseDelta:
    tool_call_id: str
    partial_json: str
    type: str = field(default="tool_use_delta", init=False)


@dataclass(frozen=True)
class ToolUseEnd:
    """A complete tool call.

    When the accumulated arguments are not valid JSON the event still
    fires: ``input`` is ``{"_raw": <string>}`` and ``raw_input`` holds the
    same string, so malformed arguments stay visible.  ``truncated`` marks
    a call the stream ended before closing; its arguments are kept the
    same way whether or not they happen to parse.
    """

    tool_call_id: str
    name: str
    input: dict[str, Any]
    raw_input: str | None = None
    truncated: bool = False
    type: str = field(default="tool_use_end", init=False)

    @property
    def parse_failed(self) -> bool:
        return self.raw_input is not None


@dataclass(frozen=True)
class MessageEnd:
    stop_reason: str = ""
    type: str = field(default="message_end", init=False)


@dataclass(frozen=True)
class StreamError:
    message: str
    code: str = ""
    type: str = field(default="error", init=False)


StreamEvent = Union[
    MessageStart,
    TextDelta,
    ThinkingDelta,
    ToolUseStart,
    ToolUseDelta,
    ToolUseEnd,
    MessageEnd,
    StreamError,
]


@dataclass
class StreamUsage:
    """Accumulates token usage reported by the provider for one turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
