"""
Outbound boundary to the push-notification service.

The engine calls `notify` from its transition handlers. Delivery problems are
logged and never roll back a transition.
"""
import asyncio
import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    async def notify(self, user_id: str, title: str, message: str, payload: dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...


class LoggingNotifier:
    """Used when no push service is configured."""

    async def notify(self, user_id: str, title: str, message: str, payload: dict[str, Any]) -> None:
        logger.info("notify user=%s title=%r message=%r payload=%s", user_id, title, message, payload)

    async def aclose(self) -> None:
        pass


class WebhookNotifier:
    """
    POSTs each notification to the push service, retrying failed attempts with
    exponential backoff (1s, 2s, ...). Gives up after `max_attempts`.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
        backoff_base: float = 1.0,
    ):
        self.url = url
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def notify(self, user_id: str, title: str, message: str, payload: dict[str, Any]) -> None:
        body = {"user_id": user_id, "title": title, "message": message, "data": payload}
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._send(body)
                return
            except NotificationError as e:
                if attempt == self.max_attempts:
                    logger.error("Push to user=%s failed after %d attempts: %s", user_id, attempt, e)
                    return
                await asyncio.sleep(self.backoff_base * 2 ** (attempt - 1))

    async def _send(self, body: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            raise NotificationError(str(exc)) from exc
        if resp.status_code >= 400:
            raise NotificationError(f"push service error {resp.status_code}: {resp.text}")

    async def aclose(self) -> None:
        await self._client.aclose()
