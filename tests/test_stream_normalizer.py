"""Tests for relay.streaming — provider chunks to canonical events."""

from __future__ import annotations

import json

import pytest

from relay.streaming import (
    MessageEnd,
    MessageStart,
    StreamError,
    StreamNormalizer,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
    default_provider_registry,
)
from relay.streaming.adapters import AnthropicAdapter
from relay.streaming.normalizer import ProviderRegistry, decode_chunk
from relay_ide.errors import StreamParseError


@pytest.fixture
def providers() -> ProviderRegistry:
    return default_provider_registry()


def _feed(norm: StreamNormalizer, chunks) -> list:
    events = []
    for chunk in chunks:
        events.extend(norm.process(chunk))
    return events


def _of(events, cls) -> list:
    return [e for e in events if isinstance(e, cls)]


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_tool_turn(fragments: list[str]) -> list[dict]:
    chunks: list[dict] = [
        {
            "type": "message_start",
            "message": {"id": "msg_1", "model": "claude-x", "usage": {"input_tokens": 12}},
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me "}},
        {"type": "ping"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "look."}},
        {"type": "content_block_stop", "index": 0},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file"},
        },
    ]
    chunks += [
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": f}}
        for f in fragments
    ]
    chunks += [
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
        {"type": "message_stop"},
    ]
    return chunks


class TestAnthropic:
    def test_full_turn(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        events = _feed(norm, _anthropic_tool_turn(['{"pa', 'th": "src/ma', 'in.py"}']))

        assert events[0] == MessageStart(message_id="msg_1", model="claude-x")
        assert _of(events, TextDelta) == [TextDelta(text="Let me "), TextDelta(text="look.")]
        assert _of(events, ToolUseStart) == [ToolUseStart(tool_call_id="toolu_1", name="read_file")]
        assert len(_of(events, ToolUseDelta)) == 3
        end = _of(events, ToolUseEnd)[0]
        assert end.input == {"path": "src/main.py"}
        assert not end.parse_failed
        assert events[-1] == MessageEnd(stop_reason="tool_use")

        assert norm.text == "Let me look."
        assert norm.usage.input_tokens == 12
        assert norm.usage.output_tokens == 7
        assert norm.usage.total_tokens == 19
        assert norm.usage.model == "claude-x"

    def test_split_inside_escape_sequence(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        payload = json.dumps({"content": 'say "hi"\n'})
        fragments = [payload[i : i + 3] for i in range(0, len(payload), 3)]
        end = _of(_feed(norm, _anthropic_tool_turn(fragments)), ToolUseEnd)[0]
        assert end.input == {"content": 'say "hi"\n'}

    def test_malformed_arguments_surface_raw(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        end = _of(_feed(norm, _anthropic_tool_turn(['{"path": '])), ToolUseEnd)[0]
        assert end.parse_failed
        assert end.input == {"_raw": '{"path": '}
        assert end.raw_input == '{"path": '

    def test_no_arguments_is_empty_input(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        end = _of(_feed(norm, _anthropic_tool_turn([])), ToolUseEnd)[0]
        assert end.input == {}
        assert not end.parse_failed

    def test_thinking(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        events = _feed(
            norm,
            [
                {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "x"}},
            ],
        )
        assert events == [ThinkingDelta(text="hmm")]
        assert norm.thinking == "hmm"
        assert norm.text == ""

    def test_error_event(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        events = norm.process({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})
        assert events == [StreamError(message="busy", code="overloaded_error")]

    def test_unknown_event_is_skipped(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        assert norm.process({"type": "brand_new_thing"}) == []
        assert norm.process({"type": "content_block_delta", "index": 9, "delta": {"type": "input_json_delta", "partial_json": "{"}}) == []

    def test_sse_frames_and_bytes(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        frame = (
            "event: content_block_delta\n"
            'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hi"}}\n\n'
        )
        assert norm.process(frame) == [TextDelta(text="hi")]
        assert norm.process(frame.encode()) == [TextDelta(text="hi")]
        assert norm.process("data: [DONE]") == []
        assert norm.process(": keep-alive") == []
        assert norm.process("not json at all") == []
        assert norm.text == "hihi"

    def test_reset_clears_buffers(self, providers):
        norm = StreamNormalizer("anthropic", providers)
        _feed(norm, _anthropic_tool_turn(['{"pa'])[:-3])
        assert norm.text
        assert norm.state.open_tool_ids == ["toolu_1"]

        norm.reset()
        assert norm.text == ""
        assert norm.state.open_tool_ids == []
        assert norm.usage.input_tokens == 0
        # A stop for the discarded block no longer produces a tool call
        assert norm.process({"type": "content_block_stop", "index": 1}) == []


# ---------------------------------------------------------------------------
# OpenAI / xAI
# ---------------------------------------------------------------------------


def _openai_chunk(delta: dict | None = None, finish: str | None = None, **extra) -> dict:
    chunk = {"id": "chatcmpl-1", "model": "gpt-x", "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish}]}
    chunk.update(extra)
    return chunk


class TestOpenAI:
    def test_parallel_tool_calls_close_in_index_order(self, providers):
        norm = StreamNormalizer("openai", providers)
        events = _feed(
            norm,
            [
                _openai_chunk({"role": "assistant", "content": "Checking"}),
                _openai_chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "grep", "arguments": '{"pat'}}]}),
                _openai_chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "read_file", "arguments": ""}}]}),
                _openai_chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'tern": "x"}'}}]}),
                _openai_chunk({"tool_calls": [{"index": 1, "function": {"arguments": '{"path": "a.py"}'}}]}),
                _openai_chunk(finish="tool_calls"),
                {"id": "chatcmpl-1", "choices": [], "usage": {"prompt_tokens": 30, "completion_tokens": 9}},
            ],
        )
        assert events[0] == MessageStart(message_id="chatcmpl-1", model="gpt-x")
        assert [e.name for e in _of(events, ToolUseStart)] == ["grep", "read_file"]
        ends = _of(events, ToolUseEnd)
        assert [(e.tool_call_id, e.input) for e in ends] == [
            ("call_a", {"pattern": "x"}),
            ("call_b", {"path": "a.py"}),
        ]
        assert events[-1] == MessageEnd(stop_reason="tool_calls")
        assert norm.text == "Checking"
        assert norm.usage.input_tokens == 30
        assert norm.usage.output_tokens == 9

    def test_truncated_call_surfaces_on_finish(self, providers):
        norm = StreamNormalizer("openai", providers)
        events = _feed(
            norm,
            [
                _openai_chunk({"tool_calls": [{"index": 0, "id": "call_w", "function": {"name": "write_file", "arguments": '{"path": "a.py", '}}]}),
                _openai_chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"content": "print('}}]}),
                "data: [DONE]",
            ],
        )
        assert _of(events, ToolUseEnd) == []

        ends = norm.finish()
        assert ends == [
            ToolUseEnd(
                tool_call_id="call_w",
                name="write_file",
                input={"_raw": '{"path": "a.py", "content": "print('},
                raw_input='{"path": "a.py", "content": "print(',
                truncated=True,
            )
        ]
        assert ends[0].parse_failed
        assert norm.state.open_tool_ids == []
        assert norm.finish() == []

    def test_finish_after_clean_close_is_empty(self, providers):
        norm = StreamNormalizer("openai", providers)
        _feed(
            norm,
            [
                _openai_chunk({"tool_calls": [{"index": 0, "id": "call_r", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}]}),
                _openai_chunk(finish="tool_calls"),
            ],
        )
        assert norm.finish() == []

    def test_complete_json_left_open_is_still_truncated(self, providers):
        norm = StreamNormalizer("openai", providers)
        norm.process(_openai_chunk({"tool_calls": [{"index": 0, "id": "call_r", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}]}))
        [end] = norm.finish()
        assert end.truncated
        assert end.input == {"_raw": '{"path": "a.py"}'}

    def test_missing_choices_is_skipped(self, providers):
        norm = StreamNormalizer("openai", providers)
        assert norm.process({"object": "weird"}) == []

    def test_error_payload(self, providers):
        norm = StreamNormalizer("openai", providers)
        assert norm.process({"error": {"message": "rate limited", "type": "rate_limit"}}) == [
            StreamError(message="rate limited", code="rate_limit")
        ]


class TestXAI:
    def test_reasoning_is_thinking(self, providers):
        norm = StreamNormalizer("xai", providers)
        events = _feed(
            norm,
            [
                _openai_chunk({"reasoning_content": "step one"}),
                _openai_chunk({"content": "answer"}),
                _openai_chunk(finish="stop"),
            ],
        )
        assert _of(events, ThinkingDelta) == [ThinkingDelta(text="step one")]
        assert norm.thinking == "step one"
        assert norm.text == "answer"

    def test_openai_ignores_reasoning_field(self, providers):
        norm = StreamNormalizer("openai", providers)
        assert _of(norm.process(_openai_chunk({"reasoning_content": "x"})), ThinkingDelta) == []


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class TestGoogle:
    def test_text_thoughts_and_calls(self, providers):
        norm = StreamNormalizer("google", providers)
        events = _feed(
            norm,
            [
                {
                    "responseId": "r1",
                    "modelVersion": "gemini-x",
                    "candidates": [{"content": {"parts": [{"text": "plan", "thought": True}, {"text": "Reading"}]}}],
                },
                {
                    "candidates": [
                        {
                            "content": {
                                "parts": [
                                    {"functionCall": {"name": "read_file", "args": {"path": "a.py"}}},
                                    {"functionCall": {"name": "read_file", "args": {"path": "b.py"}}},
                                ]
                            },
                            "finishReason": "STOP",
                        }
                    ],
                    "usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 5},
                },
            ],
        )
        assert events[0] == MessageStart(message_id="r1", model="gemini-x")
        assert norm.thinking == "plan"
        assert norm.text == "Reading"
        ends = _of(events, ToolUseEnd)
        assert [e.tool_call_id for e in ends] == ["read_file_0", "read_file_1"]
        assert ends[1].input == {"path": "b.py"}
        assert events[-1] == MessageEnd(stop_reason="STOP")
        assert norm.usage.input_tokens == 40

    def test_error_payload(self, providers):
        norm = StreamNormalizer("google", providers)
        assert norm.process({"error": {"message": "quota", "status": "RESOURCE_EXHAUSTED"}}) == [
            StreamError(message="quota", code="RESOURCE_EXHAUSTED")
        ]


# ---------------------------------------------------------------------------
# Registry / decoding
# ---------------------------------------------------------------------------


class TestProviderRegistry:
    def test_builtin_names(self, providers):
        assert providers.names() == ["anthropic", "google", "openai", "xai"]

    def test_duplicate(self, providers):
        with pytest.raises(ValueError, match="already registered"):
            providers.register(AnthropicAdapter)

    def test_unknown_provider_yields_nothing(self, providers, caplog):
        with caplog.at_level("WARNING"):
            norm = StreamNormalizer("mystery", providers)
        assert "No stream adapter registered for provider 'mystery'" in caplog.text
        assert not norm.supported
        assert norm.process({"type": "message_start"}) == []
        assert norm.text == ""


class TestDecodeChunk:
    def test_dict_passthrough(self):
        payload = {"a": 1}
        assert decode_chunk("x", payload) is payload

    def test_multi_line_data(self):
        assert decode_chunk("x", 'data: {"a":\ndata: 1}') == {"a": 1}

    @pytest.mark.parametrize("chunk", [42, "[1, 2]", "{broken"])
    def test_rejects(self, chunk):
        with pytest.raises(StreamParseError):
            decode_chunk("x", chunk)
