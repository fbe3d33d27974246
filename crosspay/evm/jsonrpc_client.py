"""
EVM JSON-RPC client — real network implementation of EvmClient.

Translates JSON-RPC 2.0 responses into CallResult / SubmitResult /
TxStatusResult. Uses an injectable transport (JsonRpcTransport) so the
HTTP layer can be swapped for test fakes without changing parsing logic.

No retry loops. No secrets. No chain logic beyond response parsing.

Response parsing targets standard Ethereum JSON-RPC conventions:
    - Success: {"jsonrpc": "2.0", "id": 1, "result": ...}
    - Error:   {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "..."}}
    - eth_getTransactionReceipt returns result null until mined.
"""

from __future__ import annotations

import itertools
from typing import Any

from crosspay.evm.client import CallResult, SubmitResult, TxStatusResult
from crosspay.evm.errors import is_already_known
from crosspay.evm.transport import HttpxTransport, JsonRpcTransport

_REQUEST_IDS = itertools.count(1)


class JsonRpcClient:
    """EVM JSON-RPC client implementing the EvmClient protocol.

    Args:
        url: The JSON-RPC endpoint URL (e.g. "https://sepolia.base.org").
        transport: Injectable transport for HTTP POST. Defaults to
            HttpxTransport. Pass a FakeTransport for testing.
    """

    def __init__(
        self,
        url: str,
        transport: JsonRpcTransport | None = None,
    ) -> None:
        self._url = url
        self._transport = transport or HttpxTransport()

    @property
    def url(self) -> str:
        """The JSON-RPC endpoint URL."""
        return self._url

    async def _rpc(self, method: str, params: list[Any]) -> dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(_REQUEST_IDS),
        }
        return await self._transport.post_json(self._url, payload)

    # -----------------------------------------------------------------
    # EvmClient protocol methods
    # -----------------------------------------------------------------

    async def call(self, to: str, data: str) -> CallResult:
        """Read-only contract call via ``eth_call`` at the latest block.

        Transport exceptions propagate to the caller.
        """
        response = await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])
        return _parse_call_response(response)

    async def send_raw_transaction(self, raw_tx_hex: str) -> SubmitResult:
        """Broadcast a signed transaction via ``eth_sendRawTransaction``.

        Transport exceptions propagate to the caller (the executor maps
        them to BACKEND_UNAVAILABLE).
        """
        response = await self._rpc("eth_sendRawTransaction", [raw_tx_hex])
        return _parse_send_response(response)

    async def get_transaction_receipt(self, tx_hash: str) -> TxStatusResult:
        """Query a receipt via ``eth_getTransactionReceipt``.

        Transport exceptions propagate to the caller.
        """
        response = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        return _parse_receipt_response(response)


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _error_message(response: dict[str, Any]) -> str | None:
    error = response.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "unknown rpc error")
    return str(error)


def _parse_hex_int(value: Any) -> int | None:
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    if isinstance(value, int):
        return value
    return None


def _parse_call_response(response: dict[str, Any]) -> CallResult:
    """Parse an ``eth_call`` response into CallResult."""
    message = _error_message(response)
    if message is not None:
        return CallResult(ok=False, error_code="SERVER_ERROR", detail=message)

    data = response.get("result")
    if not isinstance(data, str) or not data.startswith("0x"):
        return CallResult(
            ok=False,
            error_code="SERVER_ERROR",
            detail="no hex result in eth_call response",
        )
    return CallResult(ok=True, data=data)


def _parse_send_response(response: dict[str, Any]) -> SubmitResult:
    """Parse an ``eth_sendRawTransaction`` response into SubmitResult.

    Handles:
        - Accepted (result is the tx hash)
        - "already known" errors (same signed tx already pooled → accepted)
        - Node rejections (accepted=False with detail)
        - Missing result (accepted=False)
    """
    message = _error_message(response)
    if message is not None:
        if is_already_known(message):
            return SubmitResult(accepted=True, detail=message)
        return SubmitResult(accepted=False, error_code="SERVER_ERROR", detail=message)

    tx_hash = response.get("result")
    if not isinstance(tx_hash, str):
        return SubmitResult(
            accepted=False,
            error_code="SERVER_ERROR",
            detail="no tx hash in eth_sendRawTransaction response",
        )
    return SubmitResult(accepted=True, tx_hash=tx_hash)


def _parse_receipt_response(response: dict[str, Any]) -> TxStatusResult:
    """Parse an ``eth_getTransactionReceipt`` response into TxStatusResult.

    Handles:
        - Not yet mined (result null)
        - Mined with status 0x1 (success) or 0x0 (reverted)
        - Server-level errors
    """
    message = _error_message(response)
    if message is not None:
        return TxStatusResult(found=False, error_code="SERVER_ERROR", detail=message)

    receipt = response.get("result")
    if receipt is None:
        return TxStatusResult(found=False)
    if not isinstance(receipt, dict):
        return TxStatusResult(
            found=False,
            error_code="SERVER_ERROR",
            detail="malformed receipt in eth_getTransactionReceipt response",
        )

    status = _parse_hex_int(receipt.get("status"))
    return TxStatusResult(
        found=True,
        success=status == 1 if status is not None else None,
        block_number=_parse_hex_int(receipt.get("blockNumber")),
    )
