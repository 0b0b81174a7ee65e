"""Shared HTTP plumbing for commerce platform APIs."""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class CommerceAPIClient:
    """Lazily created httpx client with the platform's auth header."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client settings.

        Args:
            base_url: Base URL of the service.
            api_key: Optional API key sent as ``X-API-Key``.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["X-API-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
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

    async def get_json(
        self, path: str, params: dict[str, Any] | None = None
    ) -> Any | None:
        """GET ``path`` and decode JSON. Returns None on 404.

        Raises:
            httpx.HTTPStatusError: For other error statuses.
            httpx.RequestError: If the service is unreachable.
        """
        client = await self._get_client()
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        response = await client.get(path, params=clean)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(
                f"{self.base_url}{path} returned {response.status_code}",
                extra={"response": response.text},
            )
        response.raise_for_status()
        return response.json()

    async def post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        """POST a JSON body and return the raw response."""
        client = await self._get_client()
        return await client.post(path, json=body)
