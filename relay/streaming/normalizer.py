"""Stream normalisation — provider chunks in, canonical events out.

A ``StreamNormalizer`` is bound to one session and one provider.  It owns
the session's accumulation buffers (running text, running thinking text,
and in-flight tool-call arguments) and delegates field mapping to a
``ProviderAdapter`` looked up in a ``ProviderRegistry`` that the
composition root populates at startup.

Malformed chunks never abort a session: they are logged at debug level
and produce no events.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from relay.streaming.events import (
    StreamEvent,
    StreamUsage,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
)
from relay_ide.errors import StreamParseError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-session buffers
# ---------------------------------------------------------------------------


class StreamState:
    """Accumulation buffers for one turn of one session.

    Adapters call ``open_tool`` / ``append_tool_args`` / ``close_tool`` so
    that argument accumulation and JSON parsing live in one place.
    ``scratch`` is adapter-private bookkeeping (e.g. block index → id).
    """

    def __init__(self) -> None:
        self.text: str = ""
        self.thinking: str = ""
        self.tool_args: dict[str, str] = {}
        self.tool_names: dict[str, str] = {}
        self.usage = StreamUsage()
        self.started: bool = False
        self.stop_reason: str = ""
        self.scratch: dict[str, Any] = {}

    def open_tool(self, tool_call_id: str, name: str) -> ToolUseStart:
        self.tool_args[tool_call_id] = ""
        self.tool_names[tool_call_id] = name
        return ToolUseStart(tool_call_id=tool_call_id, name=name)

    def append_tool_args(self, tool_call_id: str, fragment: str) -> ToolUseDelta:
        if tool_call_id not in self.tool_args:
            raise StreamParseError("stream", f"argument fragment for unknown tool call {tool_call_id!r}")
        self.tool_args[tool_call_id] += fragment
        return ToolUseDelta(tool_call_id=tool_call_id, partial_json=fragment)

    def close_tool(self, tool_call_id: str) -> ToolUseEnd:
        if tool_call_id not in self.tool_args:
            raise StreamParseError("stream", f"end of unknown tool call {tool_call_id!r}")
        raw = self.tool_args.pop(tool_call_id)
        name = self.tool_names.pop(tool_call_id, "")
        return _finish_tool_call(tool_call_id, name, raw)

    @property
    def open_tool_ids(self) -> list[str]:
        return list(self.tool_args)


def _finish_tool_call(tool_call_id: str, name: str, raw: str) -> ToolUseEnd:
    if not raw.strip():
        return ToolUseEnd(tool_call_id=tool_call_id, name=name, input={})
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call %s (%s) has unparseable arguments (%d chars)", tool_call_id, name, len(raw))
        return ToolUseEnd(tool_call_id=tool_call_id, name=name, input={"_raw": raw}, raw_input=raw)
    if not isinstance(parsed, dict):
        return ToolUseEnd(tool_call_id=tool_call_id, name=name, input={"_raw": raw}, raw_input=raw)
    return ToolUseEnd(tool_call_id=tool_call_id, name=name, input=parsed)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def decode_chunk(provider: str, chunk: Any) -> dict | None:
    """Turn a raw chunk (dict, JSON text, or SSE frame) into a payload dict.

    Returns ``None`` for keep-alives and the ``[DONE]`` sentinel.
    """
    if isinstance(chunk, dict):
        return chunk
    if isinstance(chunk, (bytes, bytearray)):
        chunk = chunk.decode("utf-8", errors="replace")
    if not isinstance(chunk, str):
        raise StreamParseError(provider, f"unsupported chunk type {type(chunk).__name__}", raw=chunk)

    text = chunk.strip()
    lines = text.splitlines()
    if text.startswith(("event:", ":")) or any(line.startswith("data:") for line in lines):
        text = "\n".join(line[5:].strip() for line in lines if line.startswith("data:"))
    if not text or text == "[DONE]":
        return None

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StreamParseError(provider, f"invalid JSON ({exc.msg})", raw=chunk) from None
    if not isinstance(payload, dict):
        raise StreamParseError(provider, "payload is not an object", raw=chunk)
    return payload


class ProviderAdapter(ABC):
    """Maps one provider's wire format onto canonical events."""

    name: ClassVar[str]

    def decode(self, chunk: Any) -> dict | None:
        return decode_chunk(self.name, chunk)

    @abstractmethod
    def translate(self, payload: dict, state: StreamState) -> list[StreamEvent]:
        """Return the canonical events for one decoded payload.

        Raise :class:`StreamParseError` when the payload does not have the
        expected shape.
        """


class ProviderRegistry:
    """Closed set of provider adapters, registered at startup."""

    def __init__(self) -> None:
        self._adapters: dict[str, type[ProviderAdapter]] = {}

    def register(self, adapter_cls: type[ProviderAdapter]) -> None:
        name = adapter_cls.name
        if name in self._adapters:
            raise ValueError(f"Provider '{name}' is already registered")
        self._adapters[name] = adapter_cls

    def create(self, provider: str) -> ProviderAdapter | None:
        adapter_cls = self._adapters.get(provider)
        return adapter_cls() if adapter_cls else None

    def is_registered(self, provider: str) -> bool:
        return provider in self._adapters

    def names(self) -> list[str]:
        return sorted(self._adapters)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class StreamNormalizer:
    """Per-session normaliser.  Call ``reset()`` at the start of every turn."""

    def __init__(self, provider: str, registry: ProviderRegistry) -> None:
        self.provider = provider
        self._adapter = registry.create(provider)
        if self._adapter is None:
            logger.warning(
                "No stream adapter registered for provider %r (known: %s); its output will be dropped",
                provider,
                ", ".join(registry.names()) or "none",
            )
        self.state = StreamState()

    @property
    def supported(self) -> bool:
        return self._adapter is not None

    @property
    def usage(self) -> StreamUsage:
        return self.state.usage

    @property
    def text(self) -> str:
        return self.state.text

    @property
    def thinking(self) -> str:
        return self.state.thinking

    def reset(self) -> None:
        """Discard every buffer so nothing bleeds into the next turn."""
        self.state = StreamState()

    def process(self, chunk: Any) -> list[StreamEvent]:
        """Translate one raw chunk into zero or more canonical events."""
        if self._adapter is None:
            return []
        try:
            payload = self._adapter.decode(chunk)
            if payload is None:
                return []
            events = self._adapter.translate(payload, self.state)
        except StreamParseError as exc:
            logger.debug("Skipping chunk: %s", exc)
            return []
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.debug("Skipping malformed %s chunk: %s", self.provider, exc)
            return []

        for event in events:
            if event.type == "text_delta":
                self.state.text += event.text
            elif event.type == "thinking_delta":
                self.state.thinking += event.text
        return events

    def finish(self) -> list[StreamEvent]:
        """Close the tool calls a stream left open when it ended.

        Call once the provider stream is exhausted.  Each open call comes
        back as a ``truncated`` :class:`ToolUseEnd` carrying whatever
        arguments arrived, so it can be recorded as a failed call rather
        than silently lost.
        """
        events: list[StreamEvent] = []
        for tool_call_id in self.state.open_tool_ids:
            raw = self.state.tool_args.pop(tool_call_id)
            name = self.state.tool_names.pop(tool_call_id, "")
            logger.warning(
                "%s stream ended inside tool call %s (%s) after %d argument chars",
                self.provider, tool_call_id, name, len(raw),
            )
            events.append(
                ToolUseEnd(
                    tool_call_id=tool_call_id,
                    name=name,
                    input={"_raw": raw},
                    raw_input=raw,
                    truncated=True,
                )
            )
        self.state.scratch.clear()
        return events
