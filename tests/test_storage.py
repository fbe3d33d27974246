"""
Tests for the SQLite intent repository.

Test plan:
- Create: inserts PENDING row and a creation event, duplicate id → False
- Get: roundtrip of every field, None for unknown id
- Conditional update: OK returns new snapshot, wrong status → CONFLICT
  with current snapshot, unknown id → NOT_FOUND, write-once field
  already set → CONFLICT, match guard mismatch → CONFLICT, illegal
  transition and unknown fields raise ValueError, a target_tx_ref
  already recorded on another intent → CONFLICT (not an exception)
- Events: one per status change, ordered seq, detail preserved,
  non-status updates do not log
- List by status: filters and orders by created_at, honors limit
- Concurrency: N threads racing the same transition → exactly one OK
  (in-memory and file-backed)
- Persistence: file-backed data survives a new repository instance
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from crosspay.intent import IntentStatus, PaymentIntent
from crosspay.repository import IntentRepository, UpdateOutcome
from crosspay.storage import SqliteIntentRepository

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MERCHANT = "0x" + "cd" * 20
CREATED_AT = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def _make_intent(intent_id: str = "intent-1", **overrides: object) -> PaymentIntent:
    kwargs: dict[str, object] = {
        "intent_id": intent_id,
        "amount": Decimal("0.05"),
        "merchant_recipient": MERCHANT,
        "payer_chain": "solana-devnet",
        "target_chain": "base-sepolia",
        "created_at": CREATED_AT,
        "updated_at": CREATED_AT,
        "expires_at": CREATED_AT + timedelta(minutes=10),
    }
    kwargs.update(overrides)
    return PaymentIntent(**kwargs)  # type: ignore[arg-type]


def _settle_source(repo: SqliteIntentRepository, intent_id: str = "intent-1") -> None:
    result = repo.conditional_update(
        intent_id,
        IntentStatus.PENDING,
        {
            "status": IntentStatus.SOURCE_SETTLED,
            "source_proof": "proof",
            "source_tx_ref": "sig-1",
            "source_settled_at": CREATED_AT + timedelta(seconds=1),
            "updated_at": CREATED_AT + timedelta(seconds=1),
        },
    )
    assert result.ok


@pytest.fixture()
def repo() -> SqliteIntentRepository:
    return SqliteIntentRepository()


# ---------------------------------------------------------------------------
# Create / get
# ---------------------------------------------------------------------------


class TestCreate:
    def test_implements_protocol(self, repo: SqliteIntentRepository) -> None:
        assert isinstance(repo, IntentRepository)

    def test_create_and_get(self, repo: SqliteIntentRepository) -> None:
        intent = _make_intent()
        assert repo.create(intent) is True
        assert repo.get("intent-1") == intent

    def test_duplicate_id_returns_false(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        assert repo.create(_make_intent(amount=Decimal("9"))) is False
        stored = repo.get("intent-1")
        assert stored is not None
        assert stored.amount == Decimal("0.05")

    def test_get_unknown(self, repo: SqliteIntentRepository) -> None:
        assert repo.get("nope") is None

    def test_creation_event(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        events = repo.list_events("intent-1")
        assert len(events) == 1
        assert events[0].seq == 1
        assert events[0].from_status is None
        assert events[0].to_status == IntentStatus.PENDING
        assert events[0].detail == {"amount": "0.05"}

    def test_amount_stored_exactly(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent(amount=Decimal("123456.000001")))
        stored = repo.get("intent-1")
        assert stored is not None
        assert stored.amount == Decimal("123456.000001")


# ---------------------------------------------------------------------------
# Conditional update
# ---------------------------------------------------------------------------


class TestConditionalUpdate:
    def test_ok_returns_new_snapshot(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        result = repo.conditional_update(
            "intent-1",
            IntentStatus.PENDING,
            {"status": IntentStatus.SOURCE_SETTLED, "source_tx_ref": "sig-1"},
        )
        assert result.ok
        assert result.outcome == UpdateOutcome.OK
        assert result.intent is not None
        assert result.intent.status == IntentStatus.SOURCE_SETTLED
        assert result.intent.source_tx_ref == "sig-1"

    def test_wrong_status_conflict(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        result = repo.conditional_update(
            "intent-1",
            IntentStatus.PENDING,
            {"status": IntentStatus.EXPIRED},
        )
        assert result.outcome == UpdateOutcome.CONFLICT
        assert result.intent is not None
        assert result.intent.status == IntentStatus.SOURCE_SETTLED

    def test_not_found(self, repo: SqliteIntentRepository) -> None:
        result = repo.conditional_update(
            "nope", IntentStatus.PENDING, {"status": IntentStatus.EXPIRED}
        )
        assert result.outcome == UpdateOutcome.NOT_FOUND
        assert result.intent is None

    def test_write_once_field_not_overwritten(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        result = repo.conditional_update(
            "intent-1",
            IntentStatus.SOURCE_SETTLED,
            {"source_tx_ref": "sig-2"},
        )
        assert result.outcome == UpdateOutcome.CONFLICT
        stored = repo.get("intent-1")
        assert stored is not None
        assert stored.source_tx_ref == "sig-1"

    def test_mutable_field_updates_freely(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        first = repo.conditional_update(
            "intent-1", IntentStatus.PENDING, {"last_error_code": "A"}
        )
        second = repo.conditional_update(
            "intent-1", IntentStatus.PENDING, {"last_error_code": None}
        )
        assert first.ok and second.ok
        assert second.intent is not None
        assert second.intent.last_error_code is None

    def test_match_guard(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        claim = repo.conditional_update(
            "intent-1",
            IntentStatus.SOURCE_SETTLED,
            {"status": IntentStatus.TARGET_SETTLING, "settlement_attempts": 1},
            match={"settlement_attempts": 0},
        )
        assert claim.ok

        stale = repo.conditional_update(
            "intent-1",
            IntentStatus.TARGET_SETTLING,
            {"pending_target_tx_ref": "0xabc"},
            match={"settlement_attempts": 0},
        )
        assert stale.outcome == UpdateOutcome.CONFLICT

        current = repo.conditional_update(
            "intent-1",
            IntentStatus.TARGET_SETTLING,
            {"pending_target_tx_ref": "0xabc"},
            match={"settlement_attempts": 1},
        )
        assert current.ok
        assert current.intent is not None
        assert current.intent.pending_target_tx_ref == "0xabc"

    def test_match_unknown_column(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        with pytest.raises(ValueError):
            repo.conditional_update(
                "intent-1",
                IntentStatus.PENDING,
                {"last_error_code": "X"},
                match={"bogus": 1},
            )

    def test_illegal_transition_raises(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        with pytest.raises(ValueError, match="illegal transition"):
            repo.conditional_update(
                "intent-1", IntentStatus.PENDING, {"status": IntentStatus.COMPLETED}
            )

    def test_identity_fields_immutable(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        with pytest.raises(ValueError, match="immutable or unknown"):
            repo.conditional_update(
                "intent-1", IntentStatus.PENDING, {"amount": Decimal("1")}
            )

    def test_empty_changes_rejected(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        with pytest.raises(ValueError):
            repo.conditional_update("intent-1", IntentStatus.PENDING, {})

    def test_duplicate_target_tx_ref_conflicts(self, repo: SqliteIntentRepository) -> None:
        for intent_id in ("a", "b"):
            repo.create(_make_intent(intent_id))
            _settle_source(repo, intent_id)
            repo.conditional_update(
                intent_id,
                IntentStatus.SOURCE_SETTLED,
                {"status": IntentStatus.TARGET_SETTLING},
            )
        done = repo.conditional_update(
            "a",
            IntentStatus.TARGET_SETTLING,
            {"status": IntentStatus.COMPLETED, "target_tx_ref": "0xsame"},
        )
        assert done.ok
        dup = repo.conditional_update(
            "b",
            IntentStatus.TARGET_SETTLING,
            {"status": IntentStatus.COMPLETED, "target_tx_ref": "0xsame"},
        )
        assert dup.outcome == UpdateOutcome.CONFLICT
        assert dup.intent is not None
        assert dup.intent.status == IntentStatus.TARGET_SETTLING
        assert dup.intent.target_tx_ref is None
        assert repo.list_events("b")[-1].to_status == IntentStatus.TARGET_SETTLING

    def test_pending_raw_tx_round_trips(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        repo.conditional_update(
            "intent-1",
            IntentStatus.SOURCE_SETTLED,
            {"status": IntentStatus.TARGET_SETTLING},
        )
        result = repo.conditional_update(
            "intent-1",
            IntentStatus.TARGET_SETTLING,
            {"pending_target_tx_ref": "0xabc", "pending_target_raw_tx": "0xf86b01"},
        )
        assert result.ok
        stored = repo.get("intent-1")
        assert stored is not None
        assert stored.pending_target_raw_tx == "0xf86b01"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    def test_one_event_per_status_change(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        repo.conditional_update(
            "intent-1",
            IntentStatus.SOURCE_SETTLED,
            {"status": IntentStatus.TARGET_SETTLING},
            detail={"attempt": 1},
        )
        repo.conditional_update(
            "intent-1",
            IntentStatus.TARGET_SETTLING,
            {"pending_target_tx_ref": "0xabc"},
        )
        events = repo.list_events("intent-1")
        assert [e.seq for e in events] == [1, 2, 3]
        assert [e.to_status for e in events] == [
            IntentStatus.PENDING,
            IntentStatus.SOURCE_SETTLED,
            IntentStatus.TARGET_SETTLING,
        ]
        assert events[2].from_status == IntentStatus.SOURCE_SETTLED
        assert events[2].detail == {"attempt": 1}

    def test_event_time_from_updated_at(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        events = repo.list_events("intent-1")
        assert events[1].at == CREATED_AT + timedelta(seconds=1)

    def test_conflict_logs_nothing(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        repo.conditional_update(
            "intent-1", IntentStatus.SOURCE_SETTLED, {"status": IntentStatus.TARGET_SETTLING}
        )
        assert len(repo.list_events("intent-1")) == 1

    def test_unknown_intent_has_no_events(self, repo: SqliteIntentRepository) -> None:
        assert repo.list_events("nope") == []


# ---------------------------------------------------------------------------
# List by status
# ---------------------------------------------------------------------------


class TestListByStatus:
    def test_filters_and_orders(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent("late", created_at=CREATED_AT + timedelta(minutes=2)))
        repo.create(_make_intent("early"))
        repo.create(_make_intent("settled", created_at=CREATED_AT + timedelta(minutes=1)))
        _settle_source(repo, "settled")

        pending = repo.list_by_status(IntentStatus.PENDING)
        assert [i.intent_id for i in pending] == ["early", "late"]
        settled = repo.list_by_status(IntentStatus.SOURCE_SETTLED)
        assert [i.intent_id for i in settled] == ["settled"]

    def test_limit(self, repo: SqliteIntentRepository) -> None:
        for n in range(5):
            repo.create(_make_intent(f"i{n}", created_at=CREATED_AT + timedelta(seconds=n)))
        assert len(repo.list_by_status(IntentStatus.PENDING, limit=3)) == 3

    def test_empty(self, repo: SqliteIntentRepository) -> None:
        assert repo.list_by_status(IntentStatus.COMPLETED) == []


# ---------------------------------------------------------------------------
# Concurrency and persistence
# ---------------------------------------------------------------------------


def _race_claim(repo: SqliteIntentRepository, contenders: int) -> list[bool]:
    def claim(_: int) -> bool:
        return repo.conditional_update(
            "intent-1",
            IntentStatus.SOURCE_SETTLED,
            {"status": IntentStatus.TARGET_SETTLING, "settlement_attempts": 1},
            match={"settlement_attempts": 0},
        ).ok

    with ThreadPoolExecutor(max_workers=contenders) as pool:
        return list(pool.map(claim, range(contenders)))


class TestConcurrency:
    def test_memory_single_winner(self, repo: SqliteIntentRepository) -> None:
        repo.create(_make_intent())
        _settle_source(repo)
        results = _race_claim(repo, 16)
        assert results.count(True) == 1

    def test_file_single_winner(self, tmp_path: Path) -> None:
        repo = SqliteIntentRepository(tmp_path / "intents.db")
        repo.create(_make_intent())
        _settle_source(repo)
        results = _race_claim(repo, 8)
        assert results.count(True) == 1
        events = repo.list_events("intent-1")
        assert [e.to_status for e in events].count(IntentStatus.TARGET_SETTLING) == 1


class TestPersistence:
    def test_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "intents.db"
        first = SqliteIntentRepository(path)
        first.create(_make_intent())
        _settle_source(first)

        second = SqliteIntentRepository(path)
        stored = second.get("intent-1")
        assert stored is not None
        assert stored.status == IntentStatus.SOURCE_SETTLED
        assert stored.source_tx_ref == "sig-1"
        assert len(second.list_events("intent-1")) == 2
