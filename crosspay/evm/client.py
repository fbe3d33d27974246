"""
EVM client protocol — the network boundary.

Defines the interface the settlement executor depends on, not a
concrete implementation. This keeps the executor testable and keeps
HTTP out of business logic.

Concrete implementations:
    - JsonRpcClient (real, JSON-RPC 2.0 over an injectable transport)
    - FakeClient (tests)

The protocol has exactly three methods, matching the only network
calls the executor makes:
    - call(to, data) → CallResult               (balance query)
    - send_raw_transaction(raw_tx_hex) → SubmitResult
    - get_transaction_receipt(tx_hash) → TxStatusResult

All return boring frozen dataclasses. No exceptions for "expected"
node errors; those are captured in the result objects. Transport
failures (connection refused, timeout) do raise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


# =========================================================================
# Result types
# =========================================================================


@dataclass(frozen=True)
class CallResult:
    """Result of a read-only ``eth_call``.

    Attributes:
        ok: Whether the node returned a result.
        data: Hex-encoded return data ("0x..."). None when not ok.
        error_code: Machine-readable category when ok is False.
        detail: Node error message for diagnostics.
    """

    ok: bool
    data: str | None = None
    error_code: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class SubmitResult:
    """Result of broadcasting a signed transaction.

    Attributes:
        accepted: Whether the node accepted the transaction into its pool.
            True does NOT mean confirmed.
        tx_hash: Transaction hash returned by the node. None on rejection.
        error_code: Machine-readable error category when accepted is False.
            Mapped to SettlementFailureReason via evm/errors.py.
        detail: Node error message for diagnostics.
    """

    accepted: bool
    tx_hash: str | None = None
    error_code: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class TxStatusResult:
    """Result of querying a transaction receipt.

    Attributes:
        found: Whether the transaction has been mined.
        success: Receipt status (True for 0x1, False for 0x0).
            None when not found.
        block_number: Block containing the transaction. None if not found.
        error_code: Machine-readable category if the query itself failed.
        detail: Human-readable detail for diagnostics.
    """

    found: bool
    success: bool | None = None
    block_number: int | None = None
    error_code: str | None = None
    detail: str | None = None


# =========================================================================
# Protocol
# =========================================================================


@runtime_checkable
class EvmClient(Protocol):
    """Interface for target-chain network operations."""

    async def call(self, to: str, data: str) -> CallResult:
        """Execute a read-only contract call against the latest block."""
        ...

    async def send_raw_transaction(self, raw_tx_hex: str) -> SubmitResult:
        """Broadcast a signed transaction.

        Never raises for node-level rejections; those are captured in
        the result.
        """
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> TxStatusResult:
        """Fetch the receipt of a broadcast transaction, if mined."""
        ...
