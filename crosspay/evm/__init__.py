"""
EVM settlement backend for crosspay.

Public API:

    Pure layer (no I/O):
        - ``plan_token_transfer()`` — unsigned ERC-20 transfer tx dict.
        - ``to_base_units()`` — exact decimal → integer unit conversion.
        - Calldata helpers: ``encode_transfer``, ``encode_balance_of``,
          ``decode_uint256``.

    Impure layer (network I/O):
        - ``ChainSettlementExecutor`` — balance check, sign, broadcast,
          confirm. Returns ``TransferResult``;
          ``lookup_transfer()`` and ``rebroadcast()`` for reconciliation.

    Protocols (for dependency injection):
        - ``EvmClient`` — network boundary (call, broadcast, receipt).
        - ``TxSigner`` — secrets boundary (sign unsigned tx dict).
        - ``JsonRpcTransport`` — HTTP seam for JSON-RPC.

    Result types:
        - ``CallResult``, ``SubmitResult``, ``TxStatusResult``.
        - ``SignResult``.

    Error mapping:
        - ``classify_rpc_error()`` — node error message → SettlementFailureReason.
"""

from crosspay.evm.client import CallResult, EvmClient, SubmitResult, TxStatusResult
from crosspay.evm.errors import (
    classify_connection_error,
    classify_rpc_error,
    classify_timeout,
    is_already_known,
)
from crosspay.evm.executor import (
    ChainSettlementExecutor,
    RebroadcastStatus,
    TransferResult,
    TransferStatus,
    settlement_proof,
)
from crosspay.evm.jsonrpc_client import JsonRpcClient
from crosspay.evm.signer import SignResult, TxSigner
from crosspay.evm.transport import HttpxTransport, JsonRpcTransport
from crosspay.evm.tx import (
    BALANCE_OF_SELECTOR,
    TRANSFER_SELECTOR,
    decode_uint256,
    encode_balance_of,
    encode_transfer,
    plan_token_transfer,
    to_base_units,
)

__all__ = [
    "BALANCE_OF_SELECTOR",
    "TRANSFER_SELECTOR",
    "CallResult",
    "ChainSettlementExecutor",
    "EvmClient",
    "HttpxTransport",
    "JsonRpcClient",
    "JsonRpcTransport",
    "RebroadcastStatus",
    "SignResult",
    "SubmitResult",
    "TransferResult",
    "TransferStatus",
    "TxSigner",
    "TxStatusResult",
    "classify_connection_error",
    "classify_rpc_error",
    "classify_timeout",
    "decode_uint256",
    "encode_balance_of",
    "encode_transfer",
    "is_already_known",
    "plan_token_transfer",
    "settlement_proof",
    "to_base_units",
]
