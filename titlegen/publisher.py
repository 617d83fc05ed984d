"""Push processed-video notifications to an external HTTP queue."""

import logging
from typing import Any, Optional

import httpx

from .config import Settings

logger = logging.getLogger(__name__)


class QueuePublisher:
    """Posts JSON messages to ``{queue_url}/{queue}`` with a bearer token.

    Does nothing when the queue URL or token is not configured.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client

    async def push(self, queue: str, payload: Any) -> bool:
        if not self.settings.queue_enabled:
            logger.info("No queue configured, skipping push to %s", queue)
            return False
        url = f"{self.settings.queue_url.rstrip('/')}/{queue}"
        headers = {"Authorization": f"Bearer {self.settings.queue_token}"}
        client = self._client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Queue push to %s failed: %s", queue, e)
            return False
        finally:
            if self._client is None:
                await client.aclose()
        logger.info("Pushed message to queue %s", queue)
        return True
