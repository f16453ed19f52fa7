"""
Discovery API client.

Performs the single outbound call type: a parameterized search against
the external event discovery endpoint.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..core.errors import ConnectivityFailure, UpstreamFailure

logger = logging.getLogger(__name__)


class DiscoveryClient:
    """Thin async HTTP client for the discovery API.

    Classifies failures structurally: transport errors become
    ConnectivityFailure, non-2xx responses become UpstreamFailure. The
    response payload is returned as decoded JSON without interpretation.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        allowed_upstream_prefix: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize discovery client.

        Args:
            api_key: API key sent as the apikey query parameter (required)
            base_url: Base URL of the discovery API
            allowed_upstream_prefix: Only URLs under this prefix may be requested
            timeout: Request timeout in seconds
            http_client: Shared httpx.AsyncClient; one is created if omitted

        Raises:
            ValueError: If api_key or base_url is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.allowed_upstream_prefix = allowed_upstream_prefix or self.base_url + "/"
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def build_url(self, endpoint_id: str) -> str:
        """Return the URL for an endpoint.

        Raises:
            ValueError: If the URL falls outside the allowed upstream prefix
        """
        url = f"{self.base_url}/{endpoint_id.lstrip('/')}"
        if not url.startswith(self.allowed_upstream_prefix):
            raise ValueError(f"Refusing to call URL outside allowed upstream: {url}")
        return url

    async def fetch(self, endpoint_id: str, params: Mapping[str, Any]) -> Any:
        """Perform one search call.

        Args:
            endpoint_id: Endpoint path relative to the base URL (e.g. "events.json")
            params: Query parameters; None values are omitted

        Returns:
            Decoded JSON response payload

        Raises:
            ConnectivityFailure: The request never completed at transport level
            UpstreamFailure: The server returned a non-success status or invalid JSON
        """
        url = self.build_url(endpoint_id)
        query: Dict[str, Any] = {"apikey": self.api_key}
        query.update({key: value for key, value in params.items() if value is not None})

        try:
            response = await self.http_client.get(url, params=query)
        except httpx.TransportError as e:
            raise ConnectivityFailure(f"Could not reach discovery API: {e}", cause=e) from e

        if not response.is_success:
            logger.error("Discovery API error: %s %s", response.status_code, response.reason_phrase)
            raise UpstreamFailure(
                response.status_code,
                f"Discovery API error: {response.status_code} {response.reason_phrase}",
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFailure(response.status_code, f"Discovery API returned invalid JSON: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "DiscoveryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
