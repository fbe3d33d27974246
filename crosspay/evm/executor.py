"""
Chain settlement executor — the target-chain leg.

Composes the pure planning layer (tx.py) with the impure network
boundary (client.py, signer.py) to move tokens from the settlement
wallet to a merchant, once, and report the outcome.

One call to execute() does:
    1. Resolve the settlement account (signer.account) and network.
    2. Query the account's token balance (eth_call balanceOf).
    3. Fail fast with InsufficientFunds if balance < amount. Nothing
       has been signed or sent at this point.
    4. Build transfer(recipient, units) with exact integer units, sign,
       notify ``on_signed(signed)``, broadcast.
    5. Poll for the receipt until one confirmation or the bounded
       wait expires (ConfirmationTimeout).
    6. Return the tx hash and a synthetic settlement proof.

No retries here: retry policy belongs to the orchestrator, which only
calls execute() again after the state machine shows no transfer was
recorded for the intent.

Every failure is a SettlementFailed with a SettlementFailureReason.
Nothing else escapes for network or chain problems.

Nonce ordering across concurrent transfers from one wallet is the
signer's responsibility; this executor does not serialize submissions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from crosspay.config import SettlementConfig
from crosspay.errors import (
    ConfirmationTimeout,
    InsufficientFunds,
    SettlementFailed,
    SettlementFailureReason,
)
from crosspay.evm.client import EvmClient, TxStatusResult
from crosspay.evm.errors import classify_connection_error, classify_rpc_error
from crosspay.evm.jsonrpc_client import JsonRpcClient
from crosspay.evm.signer import SignResult, TxSigner
from crosspay.evm.transport import HttpxTransport, JsonRpcTransport
from crosspay.evm.tx import (
    decode_uint256,
    encode_balance_of,
    plan_token_transfer,
    to_base_units,
)
from crosspay.networks import TargetNetwork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a confirmed transfer.

    Attributes:
        tx_ref: Transaction hash on the target chain.
        proof: Synthetic settlement proof derived from tx_ref.
        block_number: Block the transfer was included in, if reported.
        units: Amount transferred, in token base units.
    """

    tx_ref: str
    proof: str
    block_number: int | None = None
    units: int = 0


class TransferStatus(StrEnum):
    """What the chain currently says about a broadcast transfer."""

    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    UNKNOWN = "UNKNOWN"


class RebroadcastStatus(StrEnum):
    """Node's answer when a signed transfer is submitted again.

    IN_FLIGHT: accepted or already known; the transfer may still land.
    DROPPED:   refused outright (nonce used, funds gone); it cannot land
               as signed.
    UNKNOWN:   no usable answer.
    """

    IN_FLIGHT = "IN_FLIGHT"
    DROPPED = "DROPPED"
    UNKNOWN = "UNKNOWN"


def settlement_proof(network: TargetNetwork, tx_ref: str) -> str:
    """Synthetic proof string recorded on the intent for the target leg."""
    return f"{network.name}_settlement_{tx_ref}"


class ChainSettlementExecutor:
    """Balance-checked, single-submission token transfer on the target chain.

    Args:
        client: Target-chain client (EvmClient).
        signer: Settlement wallet signer (TxSigner).
        network: Target network (chain id, token contract, decimals).
        confirmation_timeout_s: Bounded wait for the first confirmation.
        poll_interval_s: Delay between receipt polls.
        sleep: Injectable async sleep. Default asyncio.sleep.
        clock: Injectable monotonic clock. Default time.monotonic.
    """

    def __init__(
        self,
        client: EvmClient,
        signer: TxSigner,
        network: TargetNetwork,
        *,
        confirmation_timeout_s: float = 120.0,
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._signer = signer
        self._network = network
        self._confirmation_timeout_s = confirmation_timeout_s
        self._poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        signer: TxSigner,
        *,
        transport: JsonRpcTransport | None = None,
    ) -> ChainSettlementExecutor:
        """Build an executor wired to the configured target network."""
        client = JsonRpcClient(
            config.rpc_url,
            transport or HttpxTransport(timeout=config.rpc_timeout_s),
        )
        return cls(
            client,
            signer,
            config.target,
            confirmation_timeout_s=config.confirmation_timeout_s,
            poll_interval_s=config.confirmation_poll_interval_s,
        )

    @property
    def network(self) -> TargetNetwork:
        return self._network

    @property
    def account(self) -> str:
        return self._signer.account

    # -----------------------------------------------------------------
    # Balance
    # -----------------------------------------------------------------

    async def get_balance(self, account: str | None = None) -> int:
        """Spendable token balance of ``account`` (default: settlement wallet), in base units.

        Raises:
            SettlementFailed: BACKEND_UNAVAILABLE if the query fails.
        """
        owner = account or self._signer.account
        try:
            result = await self._client.call(
                self._network.token_contract, encode_balance_of(owner)
            )
        except Exception as exc:
            raise SettlementFailed(
                f"balance query failed: {exc}",
                reason=classify_connection_error(str(exc)),
            ) from exc

        if not result.ok or result.data is None:
            raise SettlementFailed(
                f"balance query rejected: {result.detail}",
                reason=SettlementFailureReason.BACKEND_UNAVAILABLE,
            )
        try:
            return decode_uint256(result.data)
        except ValueError as exc:
            raise SettlementFailed(
                f"malformed balance response: {result.data!r}",
                reason=SettlementFailureReason.BACKEND_UNAVAILABLE,
            ) from exc

    # -----------------------------------------------------------------
    # execute()
    # -----------------------------------------------------------------

    async def execute(
        self,
        intent_id: str,
        amount: Decimal,
        recipient: str,
        *,
        on_signed: Callable[[SignResult], None] | None = None,
    ) -> TransferResult:
        """Transfer ``amount`` of the settlement token to ``recipient``.

        Args:
            intent_id: Intent being settled (for logs only).
            amount: Amount in whole-token units.
            recipient: Merchant address on the target chain.
            on_signed: Called with the signed transaction (hash and raw
                bytes) after signing and before broadcast. If it raises, nothing is broadcast and the
                exception propagates unchanged.

        Returns:
            TransferResult with tx_ref and proof.

        Raises:
            InsufficientFunds: Balance below amount; nothing was sent.
            ConfirmationTimeout: Broadcast, but no confirmation in time.
            SettlementFailed: Any other failure (reason says which).
        """
        account = self._signer.account
        try:
            units = to_base_units(amount, self._network.token_decimals)
            tx = plan_token_transfer(
                self._network.token_contract,
                recipient,
                units,
                chain_id=self._network.chain_id,
            )
        except ValueError as exc:
            raise SettlementFailed(
                f"cannot build transfer: {exc}",
                reason=SettlementFailureReason.REJECTED,
            ) from exc

        logger.info(
            "intent %s: settling %s (%d units) on %s from %s to %s",
            intent_id, amount, units, self._network.name, account, recipient,
        )

        # 1. Balance check before anything is signed
        balance = await self.get_balance(account)
        logger.debug("intent %s: settlement wallet balance %d units", intent_id, balance)
        if balance < units:
            logger.warning(
                "intent %s: insufficient settlement balance (%d < %d units)",
                intent_id, balance, units,
            )
            raise InsufficientFunds(balance, units)

        # 2. Sign
        try:
            signed = self._signer.sign(tx)
        except Exception as exc:
            raise SettlementFailed(
                f"signing failed: {exc}",
                reason=SettlementFailureReason.SIGNING_FAILED,
            ) from exc

        if on_signed is not None:
            on_signed(signed)

        # 3. Broadcast
        try:
            submitted = await self._client.send_raw_transaction(signed.raw_tx_hex)
        except Exception as exc:
            raise SettlementFailed(
                f"broadcast failed: {exc}",
                reason=classify_connection_error(str(exc)),
                tx_ref=signed.tx_hash,
            ) from exc

        # The node answered and refused the transaction; it is not in
        # its pool, whatever the refusal was about.
        if not submitted.accepted:
            logger.warning(
                "intent %s: node refused transfer %s: %s",
                intent_id, signed.tx_hash, submitted.detail,
            )
            raise SettlementFailed(
                f"transfer rejected: {submitted.detail}",
                reason=SettlementFailureReason.REJECTED,
                tx_ref=signed.tx_hash,
                details={"node_reason": str(classify_rpc_error(submitted.detail))},
            )

        tx_ref = submitted.tx_hash or signed.tx_hash
        logger.info("intent %s: transfer broadcast %s", intent_id, tx_ref)

        # 4. Wait for one confirmation
        receipt = await self._wait_for_receipt(tx_ref)
        if receipt.success is False:
            raise SettlementFailed(
                f"transfer {tx_ref} reverted",
                reason=SettlementFailureReason.REVERTED,
                tx_ref=tx_ref,
                details={"block_number": receipt.block_number},
            )

        logger.info(
            "intent %s: transfer %s confirmed in block %s",
            intent_id, tx_ref, receipt.block_number,
        )
        return TransferResult(
            tx_ref=tx_ref,
            proof=settlement_proof(self._network, tx_ref),
            block_number=receipt.block_number,
            units=units,
        )

    async def _wait_for_receipt(self, tx_ref: str) -> TxStatusResult:
        """Poll until the receipt is found or the deadline passes.

        Transient query failures are logged and polling continues; only
        the deadline ends the wait.
        """
        deadline = self._clock() + self._confirmation_timeout_s
        while True:
            try:
                receipt = await self._client.get_transaction_receipt(tx_ref)
            except Exception as exc:
                logger.debug("receipt poll for %s failed: %s", tx_ref, exc)
            else:
                if receipt.found:
                    return receipt
            if self._clock() >= deadline:
                raise ConfirmationTimeout(tx_ref, self._confirmation_timeout_s)
            await self._sleep(self._poll_interval_s)

    # -----------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------

    async def lookup_transfer(self, tx_ref: str) -> TransferStatus:
        """Ask the chain what happened to a previously broadcast transfer.

        A single query, no waiting. Any failure to get an answer is
        UNKNOWN; callers must not treat UNKNOWN as "not sent".
        """
        try:
            receipt = await self._client.get_transaction_receipt(tx_ref)
        except Exception as exc:
            logger.debug("lookup of %s failed: %s", tx_ref, exc)
            return TransferStatus.UNKNOWN
        if not receipt.found:
            return TransferStatus.UNKNOWN
        if receipt.success is False:
            return TransferStatus.REVERTED
        return TransferStatus.CONFIRMED

    async def rebroadcast(self, raw_tx_hex: str) -> RebroadcastStatus:
        """Submit an already-signed transfer again.

        Same bytes, same hash: a node that has it answers "already
        known", so this never creates a second transfer.
        """
        try:
            submitted = await self._client.send_raw_transaction(raw_tx_hex)
        except Exception as exc:
            logger.debug("rebroadcast failed: %s", exc)
            return RebroadcastStatus.UNKNOWN
        if submitted.accepted:
            return RebroadcastStatus.IN_FLIGHT
        if classify_rpc_error(submitted.detail) is SettlementFailureReason.REJECTED:
            return RebroadcastStatus.DROPPED
        logger.debug("rebroadcast inconclusive: %s", submitted.detail)
        return RebroadcastStatus.UNKNOWN
