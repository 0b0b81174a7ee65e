"""HTTP relay notification adapter.

Implements NotificationPort by posting events to a realtime relay service
that fans them out to connected clients (websocket rooms per group and per
user). Delivery beyond the relay is the relay's responsibility.
"""

import logging
from typing import Any

import httpx

from groupbuy.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class HTTPRelayNotificationAdapter(NotificationPort):
    """Posts group and user events to a realtime relay."""

    def __init__(
        self,
        relay_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the relay adapter.

        Args:
            relay_url: Base URL of the relay service.
            api_key: Optional bearer token sent with every request.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        self.relay_url = relay_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.relay_url,
                headers=headers,
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(
        self, group_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Broadcast an event to the group's room."""
        await self._post(
            f"/rooms/group/{group_id}/events",
            {"event": event_name, "payload": payload},
            extra={"group_id": group_id, "event_name": event_name},
        )

    async def notify_user(
        self, user_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Send an event to the user's private room."""
        await self._post(
            f"/rooms/user/{user_id}/events",
            {"event": event_name, "payload": payload},
            extra={"user_id": user_id, "event_name": event_name},
        )

    async def _post(self, path: str, body: dict[str, Any], extra: dict[str, Any]) -> None:
        client = await self._get_client()
        try:
            response = await client.post(path, json=body)
        except httpx.RequestError as e:
            logger.error(f"Failed to reach realtime relay: {e}", extra=extra)
            raise
        if response.status_code >= 400:
            logger.error(
                f"Realtime relay rejected event: {response.status_code}",
                extra={**extra, "response": response.text},
            )
            response.raise_for_status()
        logger.debug("Event relayed", extra=extra)
