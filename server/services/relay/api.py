"""Relay HTTP API client.

Plain request/response calls against the relay origin: the agent
challenge/issue exchange and the public status endpoint. Every call carries
an explicit timeout.
"""
from typing import Any, Dict, Optional

import httpx

from constants import (
    AUTH_HTTP_TIMEOUT,
    RELAY_CHALLENGE_PATH,
    RELAY_ISSUE_PATH,
    RELAY_STATUS_PATH,
)
from core.logging import get_logger
from .exceptions import AuthError

logger = get_logger(__name__)


class RelayApiClient:
    """HTTP calls to the relay worker."""

    def __init__(self, origin: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.origin = origin
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def post_json(self, path: str, body: Dict[str, Any], timeout: float = AUTH_HTTP_TIMEOUT) -> Dict[str, Any]:
        url = f"{self.origin}{path}"
        try:
            async with self._client(timeout) as client:
                response = await client.post(url, json=body, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            raise AuthError(f"Timeout after {int(timeout * 1000)}ms") from e
        except httpx.HTTPError as e:
            raise AuthError(f"Request to {path} failed: {e}") from e

        text = response.text
        if response.is_error:
            raise AuthError(f"HTTP {response.status_code}: {text or response.reason_phrase}")
        if not text:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(f"Invalid JSON from {path}") from e
        if not isinstance(data, dict):
            raise AuthError(f"Unexpected response shape from {path}")
        return data

    async def request_challenge(self, public_key: str, agent_info: Dict[str, Any]) -> Dict[str, Any]:
        """Ask the relay for a nonce to sign. Returns {agent_id, nonce}."""
        data = await self.post_json(RELAY_CHALLENGE_PATH, {
            "public_key": public_key,
            "agent_info": agent_info,
        })
        if not data.get("agent_id") or not data.get("nonce"):
            raise AuthError("Invalid challenge response from relay")
        logger.info("[Relay] Challenge received",
                    agent_id=data["agent_id"],
                    nonce_length=len(str(data["nonce"])))
        return data

    async def request_issue(self, agent_id: str, public_key: str, signature: str) -> Dict[str, Any]:
        """Trade the signed nonce for {agent_token, ws_url, token_expires_in}."""
        data = await self.post_json(RELAY_ISSUE_PATH, {
            "agent_id": agent_id,
            "public_key": public_key,
            "signature": signature,
        })
        if not data.get("agent_token") or not data.get("ws_url"):
            raise AuthError("Invalid token response from relay")
        return data

    async def fetch_status(self, timeout: float) -> Dict[str, Any]:
        """Best-effort GET of the worker status. Never raises.

        Returns {ok, url, data} on success, {error, url} otherwise.
        """
        url = f"{self.origin}{RELAY_STATUS_PATH}"
        try:
            async with self._client(timeout) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
            if response.is_error:
                return {"error": f"HTTP {response.status_code}", "url": url}
            return {"ok": True, "url": url, "data": response.json()}
        except httpx.TimeoutException:
            return {"error": f"Timeout after {int(timeout * 1000)}ms", "url": url}
        except (httpx.HTTPError, ValueError) as e:
            return {"error": str(e) or type(e).__name__, "url": url}
