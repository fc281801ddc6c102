"""Global exception handlers for the operator API.

Domain errors map to their ``status_code``; anything unexpected is logged
with its traceback and returned as a bare 500.  Every body carries the
request ID set by :class:`RequestIDMiddleware`.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.errors import DownstreamTriggerFailure, RelayError, format_error_response

logger = logging.getLogger(__name__)


def _respond(request: Request, status_code: int, error: str, detail: object = None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return JSONResponse(
        status_code=status_code,
        content=format_error_response(error=error, detail=detail, request_id=request_id),
    )


def _where(request: Request) -> str:
    rid = getattr(request.state, "request_id", None) or "-"
    return f"{request.method} {request.url.path} [request_id={rid}]"


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    # Server-side failures at error level, client errors at info
    if exc.status_code >= 500 or isinstance(exc, DownstreamTriggerFailure):
        logger.error("%s on %s: %s", type(exc).__name__, _where(request), exc)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, _where(request), exc)
    return _respond(request, exc.status_code, str(exc))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("HTTP %s on %s: %s", exc.status_code, _where(request), exc.detail)
    return _respond(request, exc.status_code, str(exc.detail) if exc.detail else "Error")


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.warning("Validation error on %s: %s", _where(request), errors)
    return _respond(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation failed", errors)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s", _where(request), exc_info=exc)
    return _respond(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers on *app*; call before including routers."""
    handlers = (
        (RequestValidationError, validation_exception_handler),
        (StarletteHTTPException, http_exception_handler),
        (RelayError, relay_error_handler),
        (Exception, unhandled_exception_handler),
    )
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
