"""Relay -- FastAPI application entry point (operator API)."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.api.routers.fan_in import router as fan_in_router
from relay.api.routers.health import router as health_router
from relay.api.routers.questions import router as questions_router
from relay.api.routers.sessions import router as sessions_router
from relay.config import VERSION, settings
from relay.middleware import RequestIDMiddleware
from relay.middleware.exception_handler import setup_exception_handlers
from relay.services.runtime import RelayRuntime

logger = logging.getLogger(__name__)


class _ColorFormatter(logging.Formatter):
    """ANSI-colored log formatter for terminal output."""

    _COLORS = {
        logging.DEBUG:    "\033[36m",     # cyan
        logging.INFO:     "\033[32m",     # green
        logging.WARNING:  "\033[33m",     # yellow
        logging.ERROR:    "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",   # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{color}{msg}{self._RESET}"
        )


class _PlainFormatter(logging.Formatter):
    """Plain-text formatter for file logs (no ANSI codes)."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return f"{ts} {record.levelname:<8s} [{name:>20s}] {msg}"


def configure_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_ColorFormatter())
    handlers: list[logging.Handler] = [handler]

    if settings.LOG_FILE:
        from logging.handlers import RotatingFileHandler
        from pathlib import Path

        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the runtime on startup; shut it down (closing its pool) on exit."""
    configure_logging()

    runtime = RelayRuntime()
    application.state.runtime = runtime
    if "pytest" not in sys.modules:
        try:
            await runtime.db.pool()
            logger.info("Database pool initialised.")
        except Exception as exc:
            logger.warning("DB unavailable at startup (%s) -- will retry on first request.", exc)
    if runtime.default_trigger is not None:
        logger.info("Fan-in default downstream action: %s", settings.FAN_IN_DOWNSTREAM_URL)
    logger.info(
        "Relay %s ready (providers: %s; fan-in store: %s)",
        VERSION,
        ", ".join(runtime.providers.names()),
        settings.FAN_IN_STORE,
    )
    yield
    await runtime.shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Relay",
        version=VERSION,
        description="Operator API for agent sessions, questions and fan-in groups",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    setup_exception_handlers(application)
    application.add_middleware(RequestIDMiddleware)

    application.include_router(health_router)
    application.include_router(sessions_router)
    application.include_router(questions_router)
    application.include_router(fan_in_router)
    return application


app = create_app()
