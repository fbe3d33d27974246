"""
Error taxonomy for crosspay.

Every error carries a stable machine-readable ``error_code`` plus a
``details`` dict, so a transport layer can map them to responses
without parsing messages.

    InvalidInput          -> bad request, not retriable without correction
    IntentNotFound        -> unknown intent_id
    InvalidState          -> operation not valid for the current status
    InvalidProof          -> verifier explicitly rejected the proof
    VerifierUnavailable   -> verifier unreachable, retry the same request
    SettlementFailed      -> target leg failed (reason says why)
        InsufficientFunds     -> settlement wallet underfunded, rolled back
        ConfirmationTimeout   -> outcome unknown, left for reconciliation
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class SettlementFailureReason(StrEnum):
    """Sub-reason attached to every SettlementFailed."""

    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    REJECTED = "REJECTED"
    REVERTED = "REVERTED"
    SIGNING_FAILED = "SIGNING_FAILED"
    UNKNOWN = "UNKNOWN"


class CrosspayError(Exception):
    """Base class for all crosspay domain errors."""

    error_code = "CROSSPAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result


class ConfigError(ValueError):
    """Raised when configuration values are missing or malformed."""


class InvalidInput(CrosspayError):
    error_code = "INVALID_INPUT"


class IntentNotFound(CrosspayError):
    error_code = "NOT_FOUND"

    def __init__(self, intent_id: str) -> None:
        super().__init__(
            f"Payment intent {intent_id} not found",
            details={"intent_id": intent_id},
        )
        self.intent_id = intent_id


class InvalidState(CrosspayError):
    error_code = "INVALID_STATE"


class InvalidProof(CrosspayError):
    error_code = "INVALID_PROOF"


class VerifierUnavailable(CrosspayError):
    error_code = "VERIFIER_UNAVAILABLE"


class SettlementFailed(CrosspayError):
    """Target-chain leg failed. ``reason`` says why."""

    error_code = "SETTLEMENT_FAILED"

    def __init__(
        self,
        message: str,
        *,
        reason: SettlementFailureReason = SettlementFailureReason.UNKNOWN,
        tx_ref: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged: dict[str, Any] = {"reason": str(reason)}
        if tx_ref is not None:
            merged["tx_ref"] = tx_ref
        if details:
            merged.update(details)
        super().__init__(message, details=merged)
        self.reason = reason
        self.tx_ref = tx_ref


class InsufficientFunds(SettlementFailed):
    def __init__(self, balance_units: int, required_units: int) -> None:
        super().__init__(
            f"Insufficient settlement balance: have {balance_units} units, "
            f"need {required_units}",
            reason=SettlementFailureReason.INSUFFICIENT_FUNDS,
            details={
                "balance_units": balance_units,
                "required_units": required_units,
            },
        )
        self.balance_units = balance_units
        self.required_units = required_units


class ConfirmationTimeout(SettlementFailed):
    """Transfer was broadcast but not confirmed in time. Outcome unknown."""

    def __init__(self, tx_ref: str, timeout_s: float) -> None:
        super().__init__(
            f"Transfer {tx_ref} not confirmed within {timeout_s}s",
            reason=SettlementFailureReason.CONFIRMATION_TIMEOUT,
            tx_ref=tx_ref,
            details={"timeout_s": timeout_s},
        )
        self.timeout_s = timeout_s
