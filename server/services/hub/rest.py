"""Hub REST API client (Supervisor proxy).

Only the configuration lookup lives here; it feeds the relay's home id.
"""
from typing import Any, Dict, Optional

import httpx

from constants import HUB_HTTP_TIMEOUT
from core.logging import get_logger
from .exceptions import HubAPIError

logger = get_logger(__name__)


class HubRestClient:
    """Authenticated GET requests against the hub REST API."""

    def __init__(self, base_url: str, token: Optional[str], timeout: float = HUB_HTTP_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get(self, endpoint: str) -> Any:
        url = f"{self.base_url}{endpoint}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(url, headers=self._headers())
        if response.is_error:
            raise HubAPIError(response.status_code, response.reason_phrase)
        return response.json()

    async def get_config(self) -> Dict[str, Any]:
        """Hub configuration (location name, version, ids)."""
        return await self.get("/config")
