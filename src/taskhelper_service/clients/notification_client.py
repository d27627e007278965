"""Async HTTP client for the notification service."""

from __future__ import annotations

from typing import Any

import httpx

from taskhelper_service.logging import get_logger


class NotificationClient:
    """
    Publishes lifecycle events to the notification service.

    Delivery is best-effort: events are sent after the state change has
    committed, and transport failures are logged and dropped. With no
    base_url configured the client is disabled and publishing is a no-op.
    """

    def __init__(
        self,
        base_url: str | None,
        events_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._events_path = events_path
        self._client: httpx.AsyncClient | None = None
        if base_url is not None:
            self._client = httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(timeout_seconds),
            )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def publish(self, event: str, recipient_id: str, payload: dict[str, Any]) -> bool:
        """
        Send one event to one recipient.

        Returns:
            True if the notification service accepted the event
        """
        if self._client is None:
            return False

        logger = get_logger(__name__)
        try:
            response = await self._client.post(
                self._events_path,
                json={"event": event, "recipient_id": recipient_id, "payload": payload},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification delivery failed",
                extra={"event": event, "error": str(exc), "base_url": self._base_url},
            )
            return False

        if response.status_code >= 400:
            logger.warning(
                "Notification service rejected event",
                extra={"event": event, "status_code": response.status_code},
            )
            return False
        return True

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
