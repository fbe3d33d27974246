"""
Known source and target networks.

Network selection is plain data: explorer links for receipts, and for
target networks the chain id plus the settlement token contract. No
network I/O happens here.
"""

from __future__ import annotations

from dataclasses import dataclass

from crosspay.errors import ConfigError


@dataclass(frozen=True)
class SourceNetwork:
    """A payer-side ledger (proven by the facilitator, never called directly)."""

    name: str
    explorer_tx_url: str

    def explorer_url(self, tx_ref: str) -> str:
        return self.explorer_tx_url.format(tx=tx_ref)


@dataclass(frozen=True)
class TargetNetwork:
    """A settlement-side EVM chain and the token used for settlement.

    Attributes:
        name: Network identifier (e.g. "base-sepolia").
        chain_id: EIP-155 chain id, included in every signed transfer.
        token_contract: ERC-20 contract the transfer is sent to.
        token_decimals: Decimals of the settlement token (USDC: 6).
        explorer_tx_url: Format string with a ``{tx}`` placeholder.
        default_rpc_url: Public JSON-RPC endpoint used when none is configured.
    """

    name: str
    chain_id: int
    token_contract: str
    token_decimals: int
    explorer_tx_url: str
    default_rpc_url: str

    def explorer_url(self, tx_ref: str) -> str:
        return self.explorer_tx_url.format(tx=tx_ref)


SOURCE_NETWORKS: dict[str, SourceNetwork] = {
    "solana-devnet": SourceNetwork(
        name="solana-devnet",
        explorer_tx_url="https://solscan.io/tx/{tx}?cluster=devnet",
    ),
    "solana-mainnet-beta": SourceNetwork(
        name="solana-mainnet-beta",
        explorer_tx_url="https://solscan.io/tx/{tx}",
    ),
}

TARGET_NETWORKS: dict[str, TargetNetwork] = {
    "base-sepolia": TargetNetwork(
        name="base-sepolia",
        chain_id=84532,
        token_contract="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        token_decimals=6,
        explorer_tx_url="https://sepolia.basescan.org/tx/{tx}",
        default_rpc_url="https://sepolia.base.org",
    ),
    "base": TargetNetwork(
        name="base",
        chain_id=8453,
        token_contract="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
        token_decimals=6,
        explorer_tx_url="https://basescan.org/tx/{tx}",
        default_rpc_url="https://mainnet.base.org",
    ),
}


def source_network(name: str) -> SourceNetwork:
    try:
        return SOURCE_NETWORKS[name]
    except KeyError:
        raise ConfigError(
            f"unknown source network {name!r}, expected one of "
            f"{sorted(SOURCE_NETWORKS)}"
        ) from None


def target_network(name: str) -> TargetNetwork:
    try:
        return TARGET_NETWORKS[name]
    except KeyError:
        raise ConfigError(
            f"unknown target network {name!r}, expected one of "
            f"{sorted(TARGET_NETWORKS)}"
        ) from None
