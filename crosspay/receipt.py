"""
Settlement receipt — read-only projection of an intent's two legs.

A receipt is derived, never stored. Building one has no side effects,
so calling it repeatedly on an unchanged intent always yields equal
receipts. Partial receipts are normal: a leg appears as soon as its
transaction reference is recorded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from crosspay.intent import IntentStatus, PaymentIntent
from crosspay.networks import SourceNetwork, TargetNetwork


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class LegReceipt:
    """One settled leg: where it happened and how to look at it."""

    network: str
    tx_ref: str
    proof: str | None
    settled_at: datetime | None
    explorer_url: str

    def to_dict(self) -> dict[str, object]:
        return {
            "network": self.network,
            "tx_hash": self.tx_ref,
            "settle_proof": self.proof,
            "settled_at": _iso(self.settled_at),
            "explorer_url": self.explorer_url,
        }


@dataclass(frozen=True)
class SettlementReceipt:
    """Both legs of a payment intent, as currently recorded."""

    intent_id: str
    amount: str
    merchant_recipient: str
    payer_wallet: str | None
    status: IntentStatus
    source_payment: LegReceipt | None
    target_payment: LegReceipt | None
    created_at: datetime
    completed_at: datetime | None
    expires_at: datetime

    @property
    def is_complete(self) -> bool:
        return self.source_payment is not None and self.target_payment is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "intent_id": self.intent_id,
            "amount": self.amount,
            "merchant_recipient": self.merchant_recipient,
            "payer_wallet": self.payer_wallet,
            "status": self.status.value,
            "source_payment": self.source_payment.to_dict() if self.source_payment else None,
            "target_payment": self.target_payment.to_dict() if self.target_payment else None,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "expires_at": _iso(self.expires_at),
        }


def build_receipt(
    intent: PaymentIntent,
    source: SourceNetwork,
    target: TargetNetwork,
) -> SettlementReceipt:
    """Project an intent into a receipt with explorer links."""
    source_leg = None
    if intent.source_tx_ref is not None:
        source_leg = LegReceipt(
            network=source.name,
            tx_ref=intent.source_tx_ref,
            proof=intent.source_proof,
            settled_at=intent.source_settled_at,
            explorer_url=source.explorer_url(intent.source_tx_ref),
        )

    target_leg = None
    if intent.target_tx_ref is not None:
        target_leg = LegReceipt(
            network=target.name,
            tx_ref=intent.target_tx_ref,
            proof=intent.target_proof,
            settled_at=intent.target_settled_at,
            explorer_url=target.explorer_url(intent.target_tx_ref),
        )

    return SettlementReceipt(
        intent_id=intent.intent_id,
        amount=str(intent.amount),
        merchant_recipient=intent.merchant_recipient,
        payer_wallet=intent.payer_wallet,
        status=intent.status,
        source_payment=source_leg,
        target_payment=target_leg,
        created_at=intent.created_at,
        completed_at=intent.completed_at,
        expires_at=intent.expires_at,
    )
