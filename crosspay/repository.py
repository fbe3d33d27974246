"""
Intent repository contract.

The orchestrator depends on this protocol, not on SQLite, so the
store can be swapped (Postgres, DynamoDB, a test fake) without touching
lifecycle logic.

The single most important method is ``conditional_update``: an atomic
compare-expected-status-and-swap. Every lifecycle transition goes
through it, which is what makes duplicate or concurrent requests for
the same intent race safely. Exactly one writer observes OK; everyone
else observes CONFLICT and must re-read.

Implementations must also refuse to overwrite a write-once field that
already holds a value (reported as CONFLICT), and must append one
IntentEvent per status change in the same atomic step.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from crosspay.intent import (
    MUTABLE_FIELDS,
    WRITE_ONCE_FIELDS,
    IntentEvent,
    IntentStatus,
    PaymentIntent,
    can_transition,
)

UPDATABLE_FIELDS = frozenset(WRITE_ONCE_FIELDS) | frozenset(MUTABLE_FIELDS)


class UpdateOutcome(StrEnum):
    OK = "OK"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class UpdateResult:
    """Result of a conditional update.

    Attributes:
        outcome: OK, CONFLICT (status or write-once guard did not match),
            or NOT_FOUND.
        intent: The intent after the update (OK), the current intent
            that caused the conflict (CONFLICT), or None (NOT_FOUND).
    """

    outcome: UpdateOutcome
    intent: PaymentIntent | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == UpdateOutcome.OK


def validate_changes(
    expected_status: IntentStatus, changes: Mapping[str, object]
) -> None:
    """Reject changes that touch identity fields or leave the graph.

    Raises:
        ValueError: On unknown/immutable fields or an illegal transition.
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"cannot update immutable or unknown fields: {sorted(unknown)}")
    new_status = changes.get("status")
    if new_status is not None and new_status != expected_status:
        if not can_transition(expected_status, IntentStatus(str(new_status))):
            raise ValueError(
                f"illegal transition {expected_status} -> {new_status}"
            )


@runtime_checkable
class IntentRepository(Protocol):
    """Durable keyed storage for payment intents."""

    def create(self, intent: PaymentIntent) -> bool:
        """Insert a new intent. Returns False if intent_id already exists."""
        ...

    def get(self, intent_id: str) -> PaymentIntent | None:
        """Fetch an intent by id, or None."""
        ...

    def conditional_update(
        self,
        intent_id: str,
        expected_status: IntentStatus,
        changes: Mapping[str, object],
        *,
        match: Mapping[str, object] | None = None,
        detail: Mapping[str, object] | None = None,
    ) -> UpdateResult:
        """Apply ``changes`` only if the stored status is ``expected_status``.

        Args:
            intent_id: Intent to update.
            expected_status: Status the caller read before deciding.
            changes: Field → new value. Write-once fields must currently
                be unset or the update is a CONFLICT.
            match: Extra column == value guards (e.g. a fencing counter).
                Any mismatch is a CONFLICT.
            detail: Extra context recorded on the transition event.

        Returns:
            UpdateResult with outcome and the relevant intent snapshot.
        """
        ...

    def list_by_status(
        self, status: IntentStatus, limit: int = 100
    ) -> list[PaymentIntent]:
        """List intents in a status, oldest first."""
        ...

    def list_events(self, intent_id: str) -> list[IntentEvent]:
        """Replay the transition log for an intent, in order."""
        ...
