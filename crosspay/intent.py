"""
Payment intent — the durable record of one cross-chain payment.

A PaymentIntent is created once, never deleted, and only ever moves
along the transition graph below. Each transition is a single
conditional write keyed on the expected prior status (see
repository.py), so two racing callers can never both win.

    PENDING ──► SOURCE_SETTLED ──► TARGET_SETTLING ──► COMPLETED
       │               ▲                  │
       ▼               └──── rollback ────┘
    EXPIRED

COMPLETED and EXPIRED are terminal. TARGET_SETTLING is a transient
lock state held by whoever won the SOURCE_SETTLED → TARGET_SETTLING
race.

Field discipline:
    - Identity fields (intent_id, amount, merchant_recipient, chains,
      created_at, expires_at) are fixed at creation.
    - Leg fields (WRITE_ONCE_FIELDS) are written exactly once, at the
      transition that produces them, and never overwritten or cleared.
    - Operational fields (MUTABLE_FIELDS) track progress and may change
      on every transition.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from crosspay.errors import InvalidInput

# EVM address: 0x + 40 hex chars (checksum case is not enforced).
_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class IntentStatus(StrEnum):
    """Lifecycle state of a payment intent."""

    PENDING = "PENDING"
    SOURCE_SETTLED = "SOURCE_SETTLED"
    TARGET_SETTLING = "TARGET_SETTLING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset(
        {IntentStatus.SOURCE_SETTLED, IntentStatus.EXPIRED}
    ),
    IntentStatus.SOURCE_SETTLED: frozenset({IntentStatus.TARGET_SETTLING}),
    IntentStatus.TARGET_SETTLING: frozenset(
        {IntentStatus.COMPLETED, IntentStatus.SOURCE_SETTLED}
    ),
    IntentStatus.COMPLETED: frozenset(),
    IntentStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset({IntentStatus.COMPLETED, IntentStatus.EXPIRED})

WRITE_ONCE_FIELDS: tuple[str, ...] = (
    "source_proof",
    "source_tx_ref",
    "payer_wallet",
    "source_settled_at",
    "target_tx_ref",
    "target_proof",
    "target_settled_at",
    "completed_at",
)

MUTABLE_FIELDS: tuple[str, ...] = (
    "status",
    "pending_target_tx_ref",
    "pending_target_raw_tx",
    "settlement_attempts",
    "last_error_code",
    "updated_at",
)

_DATETIME_FIELDS: tuple[str, ...] = (
    "created_at",
    "expires_at",
    "updated_at",
    "source_settled_at",
    "target_settled_at",
    "completed_at",
)


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    """Whether ``current → target`` is an edge of the lifecycle graph."""
    return target in TRANSITIONS[current]


# =========================================================================
# Validation helpers
# =========================================================================


def parse_amount(value: Any, *, max_decimals: int) -> Decimal:
    """Parse and validate a payment amount.

    Accepts Decimal, int, str, or float (floats go through ``str`` so
    ``0.05`` stays ``Decimal("0.05")``). The amount must be finite,
    strictly positive, and expressible in the settlement asset's
    smallest unit without rounding.

    Raises:
        InvalidInput: If the amount is malformed, non-positive, or too
            precise for the asset.
    """
    if isinstance(value, bool):
        raise InvalidInput("amount must be a number", details={"amount": value})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInput(
            f"amount is not a valid decimal: {value!r}",
            details={"amount": str(value)},
        ) from exc

    if not amount.is_finite():
        raise InvalidInput("amount must be finite", details={"amount": str(value)})
    if amount <= 0:
        raise InvalidInput(
            "amount must be greater than zero", details={"amount": str(amount)}
        )
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > max_decimals:
        raise InvalidInput(
            f"amount has more than {max_decimals} decimal places",
            details={"amount": str(amount), "max_decimals": max_decimals},
        )
    return amount


def validate_evm_address(value: Any, field_name: str = "merchant_recipient") -> str:
    """Raise InvalidInput unless value is a 0x-prefixed 20-byte hex address."""
    if not isinstance(value, str) or not _EVM_ADDRESS_RE.match(value):
        raise InvalidInput(
            f"{field_name} must be a valid EVM address (0x + 40 hex chars)",
            details={field_name: value},
        )
    return value


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =========================================================================
# PaymentIntent
# =========================================================================


@dataclass(frozen=True)
class PaymentIntent:
    """One requested cross-chain payment and its settlement progress."""

    # --- Identity (fixed at creation) ---
    intent_id: str
    amount: Decimal
    merchant_recipient: str
    payer_chain: str
    target_chain: str
    created_at: datetime
    expires_at: datetime

    # --- Lifecycle ---
    status: IntentStatus = IntentStatus.PENDING
    updated_at: datetime | None = None

    # --- Source leg (write-once) ---
    source_proof: str | None = None
    source_tx_ref: str | None = None
    payer_wallet: str | None = None
    source_settled_at: datetime | None = None

    # --- Target leg (write-once) ---
    target_tx_ref: str | None = None
    target_proof: str | None = None
    target_settled_at: datetime | None = None
    completed_at: datetime | None = None

    # --- Operational ---
    pending_target_tx_ref: str | None = None
    pending_target_raw_tx: str | None = None
    settlement_attempts: int = 0
    last_error_code: str | None = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"amount must be positive, got: {self.amount}")
        validate_evm_address(self.merchant_recipient)
        if not isinstance(self.status, IntentStatus):
            object.__setattr__(self, "status", IntentStatus(self.status))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired_at(self, now: datetime) -> bool:
        """True if this intent is still PENDING but its window has closed."""
        return self.status == IntentStatus.PENDING and now >= self.expires_at

    # --- Serialization ---

    def to_dict(self) -> dict[str, object]:
        """Full serialization (amount as string, datetimes as ISO 8601)."""
        return {
            "intent_id": self.intent_id,
            "amount": str(self.amount),
            "merchant_recipient": self.merchant_recipient,
            "payer_chain": self.payer_chain,
            "target_chain": self.target_chain,
            "status": self.status.value,
            "payer_wallet": self.payer_wallet,
            "source_proof": self.source_proof,
            "source_tx_ref": self.source_tx_ref,
            "target_tx_ref": self.target_tx_ref,
            "target_proof": self.target_proof,
            "pending_target_tx_ref": self.pending_target_tx_ref,
            "pending_target_raw_tx": self.pending_target_raw_tx,
            "settlement_attempts": self.settlement_attempts,
            "last_error_code": self.last_error_code,
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "source_settled_at": _format_dt(self.source_settled_at),
            "target_settled_at": _format_dt(self.target_settled_at),
            "completed_at": _format_dt(self.completed_at),
            "expires_at": _format_dt(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentIntent:
        kwargs = {
            name: _parse_dt(data.get(name)) for name in _DATETIME_FIELDS
        }
        return cls(
            intent_id=data["intent_id"],
            amount=Decimal(str(data["amount"])),
            merchant_recipient=data["merchant_recipient"],
            payer_chain=data["payer_chain"],
            target_chain=data["target_chain"],
            status=IntentStatus(data["status"]),
            source_proof=data.get("source_proof"),
            source_tx_ref=data.get("source_tx_ref"),
            payer_wallet=data.get("payer_wallet"),
            target_tx_ref=data.get("target_tx_ref"),
            target_proof=data.get("target_proof"),
            pending_target_tx_ref=data.get("pending_target_tx_ref"),
            pending_target_raw_tx=data.get("pending_target_raw_tx"),
            settlement_attempts=int(data.get("settlement_attempts") or 0),
            last_error_code=data.get("last_error_code"),
            **kwargs,
        )


# =========================================================================
# IntentEvent (transition log entry)
# =========================================================================


@dataclass(frozen=True)
class IntentEvent:
    """One successful status transition, as recorded in the audit log."""

    intent_id: str
    seq: int
    from_status: IntentStatus | None
    to_status: IntentStatus
    at: datetime
    detail: dict[str, object]

    def to_dict(self) -> dict[str, object]:
        return {
            "intent_id": self.intent_id,
            "seq": self.seq,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "at": self.at.isoformat(),
            "detail": dict(self.detail),
        }
