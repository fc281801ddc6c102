"""Provider stream normalisation into canonical events."""

from relay.streaming.adapters import BUILTIN_ADAPTERS
from relay.streaming.events import (
    MessageEnd,
    MessageStart,
    StreamError,
    StreamEvent,
    StreamUsage,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
)
from relay.streaming.normalizer import (
    ProviderAdapter,
    ProviderRegistry,
    StreamNormalizer,
    StreamState,
)


def default_provider_registry() -> ProviderRegistry:
    """A registry holding every built-in adapter."""
    registry = ProviderRegistry()
    for adapter_cls in BUILTIN_ADAPTERS:
        registry.register(adapter_cls)
    return registry


__all__ = [
    "MessageEnd",
    "MessageStart",
    "ProviderAdapter",
    "ProviderRegistry",
    "StreamError",
    "StreamEvent",
    "StreamNormalizer",
    "StreamState",
    "StreamUsage",
    "TextDelta",
    "ThinkingDelta",
    "ToolUseDelta",
    "ToolUseEnd",
    "ToolUseStart",
    "default_provider_registry",
]
