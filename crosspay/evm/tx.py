"""
ERC-20 transfer builder.

Builds unsigned token-transfer transactions and the calldata for the
balance query. This is the "transaction recipe": pure, deterministic,
no secrets, no network calls. Nonce, gas and fees are signer concerns
and are NOT included here.

Amounts are converted to the token's smallest unit with exact decimal
arithmetic. A value that does not land on a whole number of base
units is refused rather than rounded, so the merchant is never under-
or overpaid by a rounding step.

ABI encoding (static types only):
    transfer(address,uint256)  selector 0xa9059cbb
    balanceOf(address)         selector 0x70a08231
    Each argument is one 32-byte big-endian word.
"""

from __future__ import annotations

import re
from decimal import Decimal, Inexact, localcontext

TRANSFER_SELECTOR = "a9059cbb"
BALANCE_OF_SELECTOR = "70a08231"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_UINT256_MAX = 2**256 - 1


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a decimal amount to integer base units, exactly.

    Args:
        amount: Positive amount in whole-token units (e.g. Decimal("0.05")).
        decimals: Token decimals (USDC: 6).

    Returns:
        Integer number of base units (0.05 USDC → 50000).

    Raises:
        ValueError: If the amount has more precision than the token
            supports, or is negative.
    """
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got: {amount}")
    with localcontext() as ctx:
        # uint256 has 78 decimal digits; never round silently.
        ctx.prec = 80
        ctx.traps[Inexact] = True
        scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"amount {amount} is not a whole number of base units "
            f"at {decimals} decimals"
        )
    return int(scaled)


def _encode_address(address: str) -> str:
    if not _ADDRESS_RE.match(address):
        raise ValueError(f"not an EVM address: {address!r}")
    return address[2:].lower().rjust(64, "0")


def _encode_uint256(value: int) -> str:
    if value < 0 or value > _UINT256_MAX:
        raise ValueError(f"value out of uint256 range: {value}")
    return format(value, "064x")


def encode_transfer(recipient: str, units: int) -> str:
    """Calldata for ``transfer(recipient, units)``."""
    return "0x" + TRANSFER_SELECTOR + _encode_address(recipient) + _encode_uint256(units)


def encode_balance_of(owner: str) -> str:
    """Calldata for ``balanceOf(owner)``."""
    return "0x" + BALANCE_OF_SELECTOR + _encode_address(owner)


def decode_uint256(data: str) -> int:
    """Decode a single uint256 return value ("0x" + 64 hex chars)."""
    body = data[2:] if data.startswith("0x") else data
    if not body:
        raise ValueError("empty return data")
    return int(body[:64], 16)


def plan_token_transfer(
    token_contract: str,
    recipient: str,
    units: int,
    *,
    chain_id: int,
) -> dict[str, object]:
    """Build an unsigned ERC-20 transfer transaction dict.

    Args:
        token_contract: Address of the settlement token contract.
        recipient: Merchant address receiving the tokens.
        units: Amount in base units (must be > 0).
        chain_id: EIP-155 chain id of the target network.

    Returns:
        Unsigned transaction dict: chainId, to, value (always 0), data.

    Raises:
        ValueError: If an address is malformed or units is not positive.
    """
    if units <= 0:
        raise ValueError(f"units must be positive, got: {units}")
    _encode_address(token_contract)
    return {
        "chainId": chain_id,
        "to": token_contract,
        "value": 0,
        "data": encode_transfer(recipient, units),
    }
