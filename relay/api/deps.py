"""Shared router dependencies."""

from fastapi import Request

from relay.services.runtime import RelayRuntime


def get_runtime(request: Request) -> RelayRuntime:
    """The runtime the lifespan stored on ``app.state``."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Relay runtime is not initialised")
    return runtime
