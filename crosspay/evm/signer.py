"""
Transaction signer protocol — the secrets boundary.

The executor never sees private keys. It passes an unsigned
transaction dict (from plan_token_transfer) and receives a raw signed
transaction ready for ``eth_sendRawTransaction``.

The signer owns everything that needs key material or account state:
nonce selection, gas limit, and EIP-1559 fee fields. Wallet custody
and fee policy live behind this seam.

Concrete implementations are deployment-specific (local keystore,
KMS, MPC custody provider) and are not shipped with crosspay. Tests
use a FakeSigner.

The signer also exposes a key_id for the audit trail: a public
identifier (e.g. the signing address) that can be logged without
leaking secrets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class SignResult:
    """Result of signing a transaction.

    Attributes:
        raw_tx_hex: 0x-prefixed RLP-encoded signed transaction.
        tx_hash: Keccak hash of the signed transaction. Known before
            broadcast, which lets callers record it first.
        key_id: Public identifier of the signing key. Never a secret.
    """

    raw_tx_hex: str
    tx_hash: str
    key_id: str


@runtime_checkable
class TxSigner(Protocol):
    """Interface for EVM transaction signing.

    Properties:
        account: Address of the settlement wallet this signer controls.
        key_id: Public identifier of the signing key (safe for logging).
    """

    @property
    def account(self) -> str:
        """Settlement wallet address."""
        ...

    @property
    def key_id(self) -> str:
        """Public identifier of the signing key (safe for logging)."""
        ...

    def sign(self, tx: dict[str, object]) -> SignResult:
        """Complete and sign an unsigned transaction dict.

        The signer fills in nonce, gas and fee fields before signing.

        Args:
            tx: Unsigned transaction dict (chainId, to, value, data).

        Returns:
            SignResult with raw signed tx, tx_hash, and key_id.

        Raises:
            ValueError: If the transaction dict is malformed.
        """
        ...
