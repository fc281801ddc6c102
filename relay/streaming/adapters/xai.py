"""xAI streaming — OpenAI-compatible chunks with ``reasoning_content``."""

from __future__ import annotations

from relay.streaming.adapters.openai import OpenAIAdapter


class XAIAdapter(OpenAIAdapter):
    name = "xai"
    reasoning_field = "reasoning_content"
