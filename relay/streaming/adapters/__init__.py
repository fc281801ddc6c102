"""Built-in provider adapters."""

from relay.streaming.adapters.anthropic import AnthropicAdapter
from relay.streaming.adapters.google import GoogleAdapter
from relay.streaming.adapters.openai import OpenAIAdapter
from relay.streaming.adapters.xai import XAIAdapter

BUILTIN_ADAPTERS = (AnthropicAdapter, OpenAIAdapter, XAIAdapter, GoogleAdapter)

__all__ = [
    "AnthropicAdapter",
    "BUILTIN_ADAPTERS",
    "GoogleAdapter",
    "OpenAIAdapter",
    "XAIAdapter",
]
