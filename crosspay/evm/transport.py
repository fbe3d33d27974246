"""
Transport protocol for JSON-RPC calls.

Defines the seam where concrete HTTP implementations plug in. The
JSON-RPC client depends on this protocol, not on httpx directly, so
the transport can be swapped without editing client logic.

Concrete implementations:
    - HttpxTransport (default, uses httpx.AsyncClient)
    - FakeTransport (tests, returns canned responses)
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx


@runtime_checkable
class JsonRpcTransport(Protocol):
    """Async transport for JSON-RPC POST requests."""

    async def post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a JSON-RPC request and return the parsed response.

        Args:
            url: The JSON-RPC endpoint URL.
            payload: The JSON-RPC request body (jsonrpc, method, params, id).

        Returns:
            Parsed JSON response as a dict.

        Raises:
            Exception: On transport-level failures (connection refused,
                timeout, TLS error, non-2xx). The executor maps these to
                BACKEND_UNAVAILABLE.
        """
        ...


class HttpxTransport:
    """Default transport using httpx.AsyncClient."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send JSON-RPC request via httpx."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            result: dict[str, Any] = response.json()
            return result
