"""Database handle owned by the composition root.

``Database`` wraps one asyncpg pool.  ``RelayRuntime`` creates it, the
repositories receive it as their first argument, and the runtime closes
it on shutdown.  The pool is created on first use, so a database that is
down at startup is retried on the next request.

Shorthand queries (``fetch``, ``fetchrow``, ``fetchval``, ``execute``)
are retried when the connection has been reset by the remote host
(idle-connection reapers, PostgreSQL restarts).  ``acquire`` is never
retried, so transactions are not replayed half-way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import asyncpg

logger = logging.getLogger(__name__)

# Exceptions that mean "the connection died; retry with a fresh one"
_RETRY_EXCEPTIONS = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    ConnectionResetError,
    OSError,
)

_MAX_RETRIES = 4


class ResilientPool:
    """:class:`asyncpg.Pool` proxy whose shorthand queries survive dropped connections.

    After the last failed attempt ``on_dead`` is called so the owner
    builds a fresh pool next time.
    """

    __slots__ = ("_pool", "_on_dead")

    def __init__(self, pool: asyncpg.Pool, on_dead: Callable[[], None]) -> None:
        self._pool = pool
        self._on_dead = on_dead

    async def fetch(self, query: str, *args: Any, **kw: Any) -> list:
        return await self._retry(self._pool.fetch, query, *args, **kw)

    async def fetchrow(self, query: str, *args: Any, **kw: Any):
        return await self._retry(self._pool.fetchrow, query, *args, **kw)

    async def fetchval(self, query: str, *args: Any, **kw: Any):
        return await self._retry(self._pool.fetchval, query, *args, **kw)

    async def execute(self, query: str, *args: Any, **kw: Any) -> str:
        return await self._retry(self._pool.execute, query, *args, **kw)

    async def _retry(self, func, *args: Any, **kw: Any):
        for attempt in range(_MAX_RETRIES + 1):
            try:
                return await func(*args, **kw)
            except _RETRY_EXCEPTIONS as exc:
                if attempt == _MAX_RETRIES:
                    self._on_dead()
                    raise
                wait = min(0.5 * (2 ** attempt), 10.0)
                logger.warning(
                    "DB connection lost (attempt %d/%d): %s, retrying in %.1fs",
                    attempt + 1, _MAX_RETRIES + 1, exc, wait,
                )
                await asyncio.sleep(wait)

    def __getattr__(self, name: str):
        return getattr(self._pool, name)


class Database:
    """Lazily created, explicitly closed connection pool for one DSN."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wrapper: ResilientPool | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._pool is not None

    async def pool(self) -> ResilientPool:
        """The live pool, created on first call.

        A pool built on a different event loop (common in test suites) is
        discarded and rebuilt.
        """
        if self._closed:
            raise RuntimeError("Database has been closed")
        loop = asyncio.get_running_loop()
        if self._pool is not None and self._loop is not loop:
            self._discard_stale()
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._wrapper is None:
                self._pool = await asyncio.wait_for(
                    asyncpg.create_pool(
                        dsn=self._dsn,
                        min_size=self._min_size,
                        max_size=self._max_size,
                        command_timeout=60,
                        max_inactive_connection_lifetime=300.0,
                        server_settings={
                            "statement_timeout": "30000",
                            "idle_in_transaction_session_timeout": "60000",
                        },
                    ),
                    timeout=20,
                )
                self._loop = loop
                self._wrapper = ResilientPool(self._pool, self._invalidate)
                logger.info("Database pool created (max %d connections)", self._max_size)
        return self._wrapper

    def _invalidate(self) -> None:
        logger.warning("Database pool marked dead; it will be rebuilt on next use")
        self._pool = None
        self._wrapper = None

    def _discard_stale(self) -> None:
        try:
            self._pool.terminate()
        except Exception:
            logger.debug("Ignoring error while terminating stale pool", exc_info=True)
        self._invalidate()

    async def close(self) -> None:
        """Close the pool; later ``pool()`` calls fail."""
        self._closed = True
        if self._pool is None:
            return
        pool, self._pool, self._wrapper, self._loop = self._pool, None, None, None
        await pool.close()
        logger.info("Database pool closed")
