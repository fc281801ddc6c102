"""Downstream webhook client -- tells an external service that a fan-in group finished.

Used as the runtime's default downstream trigger, so a group whose
in-process trigger was lost (for example across a restart) can still be
retried by an operator.  The POST body carries the group id and the
rendered member results.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)


class DownstreamWebhook:
    """Callable trigger that POSTs a finished group to ``url``.

    Non-2xx responses raise, which the fan-in gate records as
    ``trigger_failed``.
    """

    def __init__(
        self,
        url: str,
        message_for: Callable[[UUID], Awaitable[str]],
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._message_for = message_for
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, group_id: UUID) -> None:
        message = await self._message_for(group_id)
        response = await self._client.post(
            self.url,
            json={"group_id": str(group_id), "message": message},
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        logger.info("Fan-in %s: downstream webhook accepted (HTTP %d)", group_id, response.status_code)

    async def aclose(self) -> None:
        """Close the HTTP client.  Called during runtime shutdown."""
        await self._client.aclose()
