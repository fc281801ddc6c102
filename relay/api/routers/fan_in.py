"""Fan-in router -- group status and trigger retry."""

from uuid import UUID

from fastapi import APIRouter, Depends

from relay.api.deps import get_runtime
from relay.services.runtime import RelayRuntime

router = APIRouter(prefix="/fan-in", tags=["fan-in"])


# ── GET /fan-in/{group_id} ───────────────────────────────────────────────


@router.get("/{group_id}")
async def group_status(
    group_id: UUID,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """A group and its members."""
    group = await runtime.fan_in.get_group(group_id)
    return {**group, "members": await runtime.fan_in.members(group_id)}


# ── POST /fan-in/{group_id}/retry ────────────────────────────────────────


@router.post("/{group_id}/retry")
async def retry_trigger(
    group_id: UUID,
    runtime: RelayRuntime = Depends(get_runtime),
):
    """Re-claim and re-launch the downstream action after it failed to start."""
    return await runtime.retry_fan_in(group_id)
