"""
crosspay — two-leg cross-chain payment settlement.

A payer settles on the source chain (verified by an x402 facilitator);
crosspay then pays the merchant on the target chain from its own
settlement wallet, exactly once, and projects both legs into a receipt.

Public API:
    - ``SettlementOrchestrator`` — intent lifecycle (create, source
      proof, target payment, receipt, reconciliation).
    - ``SettlementConfig`` — deployment settings, ``from_env()``.
    - ``SqliteIntentRepository`` / ``IntentRepository`` — storage.
    - ``FacilitatorVerifier`` / ``ProofVerifier`` — source-proof check.
    - ``crosspay.evm`` — target-chain executor and its seams.
"""

from crosspay.config import SettlementConfig, configure_logging
from crosspay.dispatcher import BackgroundDispatcher
from crosspay.errors import (
    ConfigError,
    ConfirmationTimeout,
    CrosspayError,
    InsufficientFunds,
    IntentNotFound,
    InvalidInput,
    InvalidProof,
    InvalidState,
    SettlementFailed,
    SettlementFailureReason,
    VerifierUnavailable,
)
from crosspay.intent import IntentEvent, IntentStatus, PaymentIntent
from crosspay.orchestrator import (
    ReconcileReport,
    SettlementExecutor,
    SettlementOrchestrator,
    SourceProofAck,
    TargetPaymentAck,
)
from crosspay.receipt import LegReceipt, SettlementReceipt, build_receipt
from crosspay.repository import IntentRepository, UpdateOutcome, UpdateResult
from crosspay.storage import SqliteIntentRepository
from crosspay.verifier import (
    FacilitatorVerifier,
    ProofVerifier,
    VerificationResult,
    VerificationStatus,
)

__version__ = "0.1.0"

__all__ = [
    "BackgroundDispatcher",
    "ConfigError",
    "ConfirmationTimeout",
    "CrosspayError",
    "FacilitatorVerifier",
    "InsufficientFunds",
    "IntentEvent",
    "IntentNotFound",
    "IntentRepository",
    "IntentStatus",
    "InvalidInput",
    "InvalidProof",
    "InvalidState",
    "LegReceipt",
    "PaymentIntent",
    "ProofVerifier",
    "ReconcileReport",
    "SettlementConfig",
    "SettlementExecutor",
    "SettlementFailed",
    "SettlementFailureReason",
    "SettlementOrchestrator",
    "SettlementReceipt",
    "SourceProofAck",
    "SqliteIntentRepository",
    "TargetPaymentAck",
    "UpdateOutcome",
    "UpdateResult",
    "VerificationResult",
    "VerificationStatus",
    "VerifierUnavailable",
    "__version__",
    "build_receipt",
    "configure_logging",
]
