"""
EVM error mapping — translates node errors to SettlementFailureReason.

Keeps the mapping coarse and conservative: JSON-RPC nodes only give us
free-text messages (geth, erigon, and hosted providers word them
differently), so classification is by substring. Unknown messages
default to UNKNOWN rather than guessing.

Broadcast outcomes:
    - "already known" / "known transaction": the exact signed tx is
      already in the pool. Not an error; the transfer is in flight.
    - nonce / funds / gas / underpriced: the node refused the tx and it
      will never be mined as-is → REJECTED.
    - rate limits, "header not found", internal errors → BACKEND_UNAVAILABLE.
"""

from __future__ import annotations

from crosspay.errors import SettlementFailureReason

_ALREADY_KNOWN_MARKERS = (
    "already known",
    "known transaction",
    "alreadyknown",
)

_REJECTED_MARKERS = (
    "nonce too low",
    "nonce too high",
    "insufficient funds",
    "intrinsic gas too low",
    "gas limit",
    "underpriced",
    "invalid sender",
    "execution reverted",
    "max fee per gas less than block base fee",
)

_UNAVAILABLE_MARKERS = (
    "rate limit",
    "too many requests",
    "header not found",
    "internal error",
    "timeout",
    "temporarily unavailable",
)


def is_already_known(message: str | None) -> bool:
    """Whether a broadcast error means the same tx is already pooled."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in _ALREADY_KNOWN_MARKERS)


def classify_rpc_error(message: str | None) -> SettlementFailureReason:
    """Map a JSON-RPC error message to a SettlementFailureReason.

    Args:
        message: The node's ``error.message``. None means the node never
            responded with a usable error.

    Returns:
        SettlementFailureReason. UNKNOWN for unrecognized messages.
    """
    if not message:
        return SettlementFailureReason.UNKNOWN

    lowered = message.lower()
    for marker in _REJECTED_MARKERS:
        if marker in lowered:
            return SettlementFailureReason.REJECTED
    for marker in _UNAVAILABLE_MARKERS:
        if marker in lowered:
            return SettlementFailureReason.BACKEND_UNAVAILABLE
    return SettlementFailureReason.UNKNOWN


def classify_connection_error(detail: str | None = None) -> SettlementFailureReason:
    """Classify a connection-level failure (DNS, TLS, socket timeout, 5xx).

    Returns:
        Always BACKEND_UNAVAILABLE; the node didn't respond.
    """
    return SettlementFailureReason.BACKEND_UNAVAILABLE


def classify_timeout() -> SettlementFailureReason:
    """Classify a bounded confirmation wait that ran out.

    Returns:
        Always CONFIRMATION_TIMEOUT.
    """
    return SettlementFailureReason.CONFIRMATION_TIMEOUT
