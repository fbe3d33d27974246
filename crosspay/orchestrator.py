"""
Settlement orchestrator — owns the payment intent state machine.

Drives each intent through

    PENDING → SOURCE_SETTLED → TARGET_SETTLING → COMPLETED
    (PENDING → EXPIRED, TARGET_SETTLING → SOURCE_SETTLED on rollback)

using only conditional writes against the repository. There is no
global lock: two requests for the same intent race on the
compare-status-and-swap and exactly one wins.

Exactly-once target transfer:
    - Only the caller that wins SOURCE_SETTLED → TARGET_SETTLING may
      call the executor. Duplicate or concurrent triggers get
      InvalidState.
    - Each claim increments ``settlement_attempts``; every later write
      in that attempt is fenced on the same counter, so a slow attempt
      can never overwrite a newer one.
    - The signed tx hash is persisted as ``pending_target_tx_ref``
      before broadcast. Once that is set, a failure whose outcome is
      unknown (confirmation timeout, broadcast transport error) leaves
      the intent in TARGET_SETTLING. Only reconcile_intent() moves it
      on, after asking the chain. The signed bytes are kept too, so a
      stale unresolved transfer can be rebroadcast; if the node refuses
      it outright and the chain has no receipt, it is rolled back.
    - Definite failures (insufficient funds, signing failure, node
      rejection, revert) roll back to SOURCE_SETTLED for retry.

Fire-and-forget:
    submit_source_proof() hands trigger_target_payment() to the
    background dispatcher and returns. If that job fails it is only
    logged; the intent stays SOURCE_SETTLED, which is itself the
    durable "needs target settlement" marker picked up again by
    reconcile_all() or any explicit trigger call.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from crosspay.config import SettlementConfig
from crosspay.dispatcher import BackgroundDispatcher
from crosspay.errors import (
    IntentNotFound,
    InvalidInput,
    InvalidProof,
    InvalidState,
    SettlementFailed,
    SettlementFailureReason,
    VerifierUnavailable,
)
from crosspay.evm.executor import (
    ChainSettlementExecutor,
    RebroadcastStatus,
    TransferResult,
    TransferStatus,
    settlement_proof,
)
from crosspay.evm.signer import SignResult, TxSigner
from crosspay.evm.transport import JsonRpcTransport
from crosspay.intent import (
    IntentEvent,
    IntentStatus,
    PaymentIntent,
    parse_amount,
    validate_evm_address,
)
from crosspay.networks import SOURCE_NETWORKS, TARGET_NETWORKS
from crosspay.receipt import SettlementReceipt, build_receipt
from crosspay.repository import IntentRepository, UpdateOutcome, UpdateResult
from crosspay.storage import SqliteIntentRepository
from crosspay.verifier import FacilitatorVerifier, ProofVerifier, VerificationStatus

logger = logging.getLogger(__name__)

# Failures that prove the broadcast transfer will never move funds.
_DEFINITE_FAILURES = frozenset(
    {SettlementFailureReason.REJECTED, SettlementFailureReason.REVERTED}
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@runtime_checkable
class SettlementExecutor(Protocol):
    """What the orchestrator needs from the target-chain executor."""

    async def execute(
        self,
        intent_id: str,
        amount: Decimal,
        recipient: str,
        *,
        on_signed: Callable[[SignResult], None] | None = None,
    ) -> TransferResult: ...

    async def lookup_transfer(self, tx_ref: str) -> TransferStatus: ...

    async def rebroadcast(self, raw_tx_hex: str) -> RebroadcastStatus: ...


# =========================================================================
# Acknowledgements
# =========================================================================


@dataclass(frozen=True)
class SourceProofAck:
    intent_id: str
    status: IntentStatus
    message: str = "Source payment verified"

    def to_dict(self) -> dict[str, object]:
        return {
            "success": True,
            "message": self.message,
            "intent_id": self.intent_id,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class TargetPaymentAck:
    intent_id: str
    status: IntentStatus
    target_tx_ref: str
    message: str = "Target payment completed"

    def to_dict(self) -> dict[str, object]:
        return {
            "success": True,
            "message": self.message,
            "intent_id": self.intent_id,
            "target_tx_hash": self.target_tx_ref,
            "status": self.status.value,
        }


@dataclass
class ReconcileReport:
    """What one reconciliation sweep did, by intent_id."""

    expired: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    redispatched: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "expired": list(self.expired),
            "completed": list(self.completed),
            "rolled_back": list(self.rolled_back),
            "unresolved": list(self.unresolved),
            "redispatched": list(self.redispatched),
        }


# =========================================================================
# Orchestrator
# =========================================================================


class SettlementOrchestrator:
    """Lifecycle owner for payment intents.

    Args:
        repository: Intent storage with conditional updates.
        verifier: Source-proof verifier.
        executor: Target-chain settlement executor.
        config: Settlement configuration (TTL, networks, stale threshold).
        dispatcher: Background dispatcher for the fire-and-forget target
            leg. Defaults to a pool sized from config.
        dispatch_target_leg: If False, submit_source_proof() does not
            schedule the target leg; callers trigger it explicitly.
        clock: Callable returning timezone-aware UTC datetimes.
            Inject for deterministic tests.
        id_factory: Callable returning new intent ids. Default uuid4.
    """

    def __init__(
        self,
        repository: IntentRepository,
        verifier: ProofVerifier,
        executor: SettlementExecutor,
        *,
        config: SettlementConfig | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        dispatch_target_leg: bool = True,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._repo = repository
        self._verifier = verifier
        self._executor = executor
        self._config = config or SettlementConfig()
        self._dispatcher = dispatcher or BackgroundDispatcher(
            self._config.max_concurrent_settlements
        )
        self._dispatch_target_leg = dispatch_target_leg
        self._now = clock or _utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        signer: TxSigner,
        *,
        repository: IntentRepository | None = None,
        verifier: ProofVerifier | None = None,
        transport: JsonRpcTransport | None = None,
    ) -> SettlementOrchestrator:
        """Wire the default SQLite store, facilitator and EVM executor.

        ``signer`` is always supplied by the deployer (KMS, HSM or a
        wallet service); crosspay ships no TxSigner implementation.
        """
        return cls(
            repository or SqliteIntentRepository(config.db_path),
            verifier or FacilitatorVerifier.from_config(config),
            ChainSettlementExecutor.from_config(config, signer, transport=transport),
            config=config,
            dispatcher=BackgroundDispatcher(config.max_concurrent_settlements),
        )

    @property
    def config(self) -> SettlementConfig:
        return self._config

    # -----------------------------------------------------------------
    # create / get
    # -----------------------------------------------------------------

    async def create_intent(self, amount: Any, recipient: Any) -> PaymentIntent:
        """Create and persist a PENDING intent.

        Raises:
            InvalidInput: If amount is not > 0 (or too precise for the
                settlement token) or recipient is not an EVM address.
        """
        parsed = parse_amount(amount, max_decimals=self._config.target.token_decimals)
        recipient = validate_evm_address(recipient)

        now = self._now()
        intent = PaymentIntent(
            intent_id=self._new_id(),
            amount=parsed,
            merchant_recipient=recipient,
            payer_chain=self._config.source_network,
            target_chain=self._config.target_network,
            status=IntentStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self._config.intent_ttl_s),
        )
        if not self._repo.create(intent):
            raise InvalidState(
                f"Payment intent {intent.intent_id} already exists",
                details={"intent_id": intent.intent_id},
            )
        logger.info(
            "intent %s created: %s to %s, expires %s",
            intent.intent_id, parsed, recipient, intent.expires_at.isoformat(),
        )
        return intent

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        """Fetch an intent, expiring it first if its window has closed.

        Raises:
            IntentNotFound: If no such intent exists.
        """
        return self._expire_if_due(self._load(intent_id))

    # -----------------------------------------------------------------
    # Source leg
    # -----------------------------------------------------------------

    async def submit_source_proof(
        self,
        intent_id: str,
        proof: str,
        tx_ref: str,
        payer_wallet: str | None = None,
    ) -> SourceProofAck:
        """Verify the payer's source-chain settlement and record it.

        Raises:
            InvalidInput: Empty proof or tx_ref.
            IntentNotFound: Unknown intent.
            InvalidState: Intent is not PENDING (already settled, expired,
                or expired while the proof was being verified).
            InvalidProof: Facilitator rejected the proof.
            VerifierUnavailable: Facilitator unreachable; intent unchanged.
        """
        if not isinstance(proof, str) or not proof.strip():
            raise InvalidInput("settle_proof is required", details={"field": "proof"})
        if not isinstance(tx_ref, str) or not tx_ref.strip():
            raise InvalidInput("tx_hash is required", details={"field": "tx_ref"})

        intent = await self.get_intent(intent_id)
        if intent.status != IntentStatus.PENDING:
            raise self._invalid_state(intent, "is not PENDING")

        result = await self._verifier.verify(proof)
        if result.status == VerificationStatus.UNAVAILABLE:
            raise VerifierUnavailable(
                f"Proof verifier unavailable: {result.detail}",
                details={"intent_id": intent_id},
            )
        if result.status == VerificationStatus.INVALID:
            raise InvalidProof(
                f"Invalid settlement proof: {result.detail}",
                details={"intent_id": intent_id},
            )

        now = self._now()
        if intent.is_expired_at(now):
            current = self._expire_if_due(intent)
            raise self._invalid_state(current, "expired during proof verification")

        changes: dict[str, object] = {
            "status": IntentStatus.SOURCE_SETTLED,
            "source_proof": proof,
            "source_tx_ref": tx_ref,
            "source_settled_at": now,
            "updated_at": now,
        }
        if payer_wallet is not None:
            changes["payer_wallet"] = payer_wallet

        update = self._repo.conditional_update(
            intent_id,
            IntentStatus.PENDING,
            changes,
            detail={"source_tx_ref": tx_ref},
        )
        settled = self._require(update, intent_id, "is no longer PENDING")
        logger.info("intent %s: source leg settled (%s)", intent_id, tx_ref)

        if self._dispatch_target_leg:
            self._dispatcher.dispatch(
                f"target-settlement:{intent_id}",
                lambda: self.trigger_target_payment(intent_id),
            )

        return SourceProofAck(intent_id=intent_id, status=settled.status)

    # -----------------------------------------------------------------
    # Target leg
    # -----------------------------------------------------------------

    async def trigger_target_payment(self, intent_id: str) -> TargetPaymentAck:
        """Execute the target-chain transfer, exactly once per intent.

        Raises:
            IntentNotFound: Unknown intent.
            InvalidState: Intent is not SOURCE_SETTLED (includes losing a
                concurrent race and triggers after completion).
            SettlementFailed: The transfer failed. InsufficientFunds and
                other definite failures roll the intent back to
                SOURCE_SETTLED; unknown outcomes (ConfirmationTimeout)
                leave it TARGET_SETTLING for reconciliation.
        """
        intent = await self.get_intent(intent_id)
        if intent.status != IntentStatus.SOURCE_SETTLED:
            raise self._invalid_state(intent, "is not SOURCE_SETTLED")

        attempt = intent.settlement_attempts + 1
        claim = self._repo.conditional_update(
            intent_id,
            IntentStatus.SOURCE_SETTLED,
            {
                "status": IntentStatus.TARGET_SETTLING,
                "settlement_attempts": attempt,
                "updated_at": self._now(),
            },
            match={"settlement_attempts": intent.settlement_attempts},
            detail={"attempt": attempt},
        )
        claimed = self._require(claim, intent_id, "is already being settled")
        return await self._settle(claimed)

    async def _settle(self, intent: PaymentIntent) -> TargetPaymentAck:
        intent_id = intent.intent_id
        attempt = intent.settlement_attempts
        fence = {"settlement_attempts": attempt}
        signed_ref: str | None = None

        def record_pending(signed: SignResult) -> None:
            nonlocal signed_ref
            update = self._repo.conditional_update(
                intent_id,
                IntentStatus.TARGET_SETTLING,
                {
                    "pending_target_tx_ref": signed.tx_hash,
                    "pending_target_raw_tx": signed.raw_tx_hex,
                    "updated_at": self._now(),
                },
                match=fence,
            )
            if not update.ok:
                raise InvalidState(
                    f"Payment intent {intent_id} lost its settlement claim",
                    details={"intent_id": intent_id, "attempt": attempt},
                )
            signed_ref = signed.tx_hash

        logger.info("intent %s: target settlement attempt %d", intent_id, attempt)
        try:
            result = await self._executor.execute(
                intent_id,
                intent.amount,
                intent.merchant_recipient,
                on_signed=record_pending,
            )
        except InvalidState:
            raise
        except SettlementFailed as exc:
            self._after_failure(intent_id, fence, exc, signed_ref)
            raise
        except Exception as exc:
            failure = SettlementFailed(
                f"Target payment failed: {exc}",
                reason=SettlementFailureReason.UNKNOWN,
                tx_ref=signed_ref,
            )
            self._after_failure(intent_id, fence, failure, signed_ref)
            raise failure from exc

        completed = self._complete(intent_id, fence, result.tx_ref, result.proof)
        return TargetPaymentAck(
            intent_id=intent_id,
            status=completed.status,
            target_tx_ref=result.tx_ref,
        )

    def _after_failure(
        self,
        intent_id: str,
        fence: dict[str, object],
        exc: SettlementFailed,
        signed_ref: str | None,
    ) -> None:
        if signed_ref is not None and exc.reason not in _DEFINITE_FAILURES:
            # Broadcast may have landed; keep the claim and the pending ref.
            self._repo.conditional_update(
                intent_id,
                IntentStatus.TARGET_SETTLING,
                {"last_error_code": str(exc.reason), "updated_at": self._now()},
                match=fence,
            )
            logger.warning(
                "intent %s: transfer %s outcome unknown (%s), awaiting reconciliation",
                intent_id, signed_ref, exc.reason,
            )
            return
        self._rollback(intent_id, fence, str(exc.reason))

    def _rollback(self, intent_id: str, fence: dict[str, object], reason: str) -> bool:
        update = self._repo.conditional_update(
            intent_id,
            IntentStatus.TARGET_SETTLING,
            {
                "status": IntentStatus.SOURCE_SETTLED,
                "pending_target_tx_ref": None,
                "pending_target_raw_tx": None,
                "last_error_code": reason,
                "updated_at": self._now(),
            },
            match=fence,
            detail={"reason": reason},
        )
        if update.ok:
            logger.warning(
                "intent %s: target settlement rolled back (%s)", intent_id, reason
            )
        return update.ok

    def _complete(
        self,
        intent_id: str,
        fence: dict[str, object],
        tx_ref: str,
        proof: str,
    ) -> PaymentIntent:
        now = self._now()
        update = self._repo.conditional_update(
            intent_id,
            IntentStatus.TARGET_SETTLING,
            {
                "status": IntentStatus.COMPLETED,
                "target_tx_ref": tx_ref,
                "target_proof": proof,
                "target_settled_at": now,
                "completed_at": now,
                "pending_target_tx_ref": None,
                "pending_target_raw_tx": None,
                "last_error_code": None,
                "updated_at": now,
            },
            match=fence,
            detail={"target_tx_ref": tx_ref},
        )
        if update.ok and update.intent is not None:
            logger.info("intent %s: completed (%s)", intent_id, tx_ref)
            return update.intent
        current = update.intent
        if current is not None and current.target_tx_ref == tx_ref:
            # Reconciliation recorded the same transfer first.
            return current
        logger.error(
            "intent %s: transfer %s confirmed but could not be recorded (%s)",
            intent_id, tx_ref, update.outcome,
        )
        raise SettlementFailed(
            f"Transfer {tx_ref} confirmed but intent {intent_id} could not be completed",
            reason=SettlementFailureReason.UNKNOWN,
            tx_ref=tx_ref,
        )

    # -----------------------------------------------------------------
    # Receipts and history
    # -----------------------------------------------------------------

    async def get_receipt(self, intent_id: str) -> SettlementReceipt:
        """Project both legs into a receipt. Read-only, no lazy expiry.

        Raises:
            IntentNotFound: Unknown intent.
        """
        intent = self._load(intent_id)
        source = SOURCE_NETWORKS.get(intent.payer_chain, self._config.source)
        target = TARGET_NETWORKS.get(intent.target_chain, self._config.target)
        return build_receipt(intent, source, target)

    def history(self, intent_id: str) -> list[IntentEvent]:
        """Transition log for an intent, oldest first."""
        self._load(intent_id)
        return self._repo.list_events(intent_id)

    # -----------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------

    async def reconcile_intent(self, intent_id: str) -> PaymentIntent:
        """Resolve an intent stuck in TARGET_SETTLING, if the facts allow.

        - Pending transfer recorded: ask the chain. Confirmed →
          COMPLETED; reverted → rollback; unknown → unchanged, except
          that past ``stale_settling_after_s`` the signed transfer is
          rebroadcast, and one the node refuses (and the chain still
          has no receipt for) is rolled back.
        - No pending transfer and the claim is older than
          ``stale_settling_after_s``: nothing was ever signed, so roll
          back.
        - PENDING intents past expiry are expired. Anything else is
          returned unchanged.

        Raises:
            IntentNotFound: Unknown intent.
        """
        intent = await self.get_intent(intent_id)
        if intent.status != IntentStatus.TARGET_SETTLING:
            return intent

        fence = {"settlement_attempts": intent.settlement_attempts}
        pending = intent.pending_target_tx_ref
        if pending is not None:
            status = await self._executor.lookup_transfer(pending)
            raw = intent.pending_target_raw_tx
            if (
                status == TransferStatus.UNKNOWN
                and raw is not None
                and self._is_stale(intent)
            ):
                outcome = await self._executor.rebroadcast(raw)
                logger.info(
                    "intent %s: rebroadcast of %s: %s", intent_id, pending, outcome
                )
                if outcome == RebroadcastStatus.DROPPED:
                    # Refused as signed; it may have been mined since the lookup.
                    status = await self._executor.lookup_transfer(pending)
                    if status == TransferStatus.UNKNOWN:
                        self._rollback(intent_id, fence, "DROPPED")
                        return self._load(intent_id)
            if status == TransferStatus.CONFIRMED:
                target = TARGET_NETWORKS.get(intent.target_chain, self._config.target)
                return self._complete(
                    intent_id, fence, pending, settlement_proof(target, pending)
                )
            if status == TransferStatus.REVERTED:
                self._rollback(intent_id, fence, str(SettlementFailureReason.REVERTED))
            else:
                logger.info(
                    "intent %s: transfer %s still unresolved", intent_id, pending
                )
            return self._load(intent_id)

        if self._is_stale(intent):
            self._rollback(intent_id, fence, "STALE_SETTLING")
        return self._load(intent_id)

    async def reconcile_all(self, limit: int = 100) -> ReconcileReport:
        """Periodic sweep over non-terminal intents.

        Expires overdue PENDING intents, reconciles TARGET_SETTLING
        intents, and re-dispatches SOURCE_SETTLED intents to the
        background dispatcher.
        """
        report = ReconcileReport()
        now = self._now()

        for intent in self._repo.list_by_status(IntentStatus.PENDING, limit):
            if intent.is_expired_at(now):
                if self._expire_if_due(intent).status == IntentStatus.EXPIRED:
                    report.expired.append(intent.intent_id)

        for intent in self._repo.list_by_status(IntentStatus.TARGET_SETTLING, limit):
            after = await self.reconcile_intent(intent.intent_id)
            if after.status == IntentStatus.COMPLETED:
                report.completed.append(intent.intent_id)
            elif after.status == IntentStatus.SOURCE_SETTLED:
                report.rolled_back.append(intent.intent_id)
            else:
                report.unresolved.append(intent.intent_id)

        for intent in self._repo.list_by_status(IntentStatus.SOURCE_SETTLED, limit):
            if intent.intent_id in report.rolled_back:
                continue
            intent_id = intent.intent_id
            self._dispatcher.dispatch(
                f"target-settlement:{intent_id}",
                lambda intent_id=intent_id: self.trigger_target_payment(intent_id),
            )
            report.redispatched.append(intent_id)

        logger.info("reconciliation sweep: %s", report.to_dict())
        return report

    async def aclose(self) -> None:
        """Wait for in-flight background settlements to finish."""
        await self._dispatcher.drain()

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _load(self, intent_id: str) -> PaymentIntent:
        intent = self._repo.get(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        return intent

    def _expire_if_due(self, intent: PaymentIntent) -> PaymentIntent:
        now = self._now()
        if not intent.is_expired_at(now):
            return intent
        update = self._repo.conditional_update(
            intent.intent_id,
            IntentStatus.PENDING,
            {"status": IntentStatus.EXPIRED, "updated_at": now},
            detail={"expires_at": intent.expires_at.isoformat()},
        )
        if update.outcome == UpdateOutcome.NOT_FOUND or update.intent is None:
            raise IntentNotFound(intent.intent_id)
        if update.ok:
            logger.info("intent %s expired", intent.intent_id)
        return update.intent

    def _is_stale(self, intent: PaymentIntent) -> bool:
        last_activity = intent.updated_at or intent.created_at
        age = self._now() - last_activity
        return age >= timedelta(seconds=self._config.stale_settling_after_s)

    def _require(self, update: UpdateResult, intent_id: str, reason: str) -> PaymentIntent:
        if update.outcome == UpdateOutcome.NOT_FOUND or update.intent is None:
            raise IntentNotFound(intent_id)
        if update.outcome == UpdateOutcome.CONFLICT:
            raise self._invalid_state(update.intent, reason)
        return update.intent

    @staticmethod
    def _invalid_state(intent: PaymentIntent, reason: str) -> InvalidState:
        return InvalidState(
            f"Payment intent {intent.intent_id} {reason} "
            f"(current status: {intent.status.value})",
            details={"intent_id": intent.intent_id, "status": intent.status.value},
        )
