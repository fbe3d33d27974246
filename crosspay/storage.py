"""
SQLite implementation of the intent repository.

Two tables:
    - payment_intents: one row per intent, current state.
    - intent_events: append-only transition log.

Invariants:
    - Rows are never deleted.
    - Every transition is one ``UPDATE ... WHERE intent_id = ? AND
      status = ?`` statement; write-once columns being written are
      additionally guarded with ``IS NULL``. rowcount decides the
      winner.
    - The event row for a status change is written in the same
      transaction as the update that caused it.
    - Timestamps are ISO 8601 with UTC offset.

Connection handling:
    - _get_conn() with persistent connection for :memory:
    - _transaction() context manager with commit/rollback
    - _init_schema() via executescript
    - sqlite3.Row row factory
    - WAL mode for file-backed databases
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from crosspay.intent import (
    WRITE_ONCE_FIELDS,
    IntentEvent,
    IntentStatus,
    PaymentIntent,
)
from crosspay.repository import UpdateOutcome, UpdateResult, validate_changes

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS payment_intents (
    intent_id TEXT PRIMARY KEY,
    amount TEXT NOT NULL,
    merchant_recipient TEXT NOT NULL,
    payer_chain TEXT NOT NULL,
    target_chain TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    payer_wallet TEXT,
    source_proof TEXT,
    source_tx_ref TEXT,
    source_settled_at TEXT,
    target_tx_ref TEXT,
    target_proof TEXT,
    target_settled_at TEXT,
    completed_at TEXT,
    pending_target_tx_ref TEXT,
    pending_target_raw_tx TEXT,
    settlement_attempts INTEGER NOT NULL DEFAULT 0,
    last_error_code TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_intents_status
ON payment_intents(status, created_at);

CREATE UNIQUE INDEX IF NOT EXISTS idx_intents_target_tx
ON payment_intents(target_tx_ref) WHERE target_tx_ref IS NOT NULL;

CREATE TABLE IF NOT EXISTS intent_events (
    intent_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    at TEXT NOT NULL,
    detail_json TEXT NOT NULL,
    PRIMARY KEY (intent_id, seq)
);
"""

_COLUMNS = (
    "intent_id",
    "amount",
    "merchant_recipient",
    "payer_chain",
    "target_chain",
    "status",
    "payer_wallet",
    "source_proof",
    "source_tx_ref",
    "source_settled_at",
    "target_tx_ref",
    "target_proof",
    "target_settled_at",
    "completed_at",
    "pending_target_tx_ref",
    "pending_target_raw_tx",
    "settlement_attempts",
    "last_error_code",
    "created_at",
    "updated_at",
    "expires_at",
)


def _to_column(value: object) -> object:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _detail_json(detail: Mapping[str, object] | None) -> str:
    return json.dumps(dict(detail or {}), sort_keys=True, separators=(",", ":"), default=str)


class SqliteIntentRepository:
    """SQLite-backed storage for payment intents and their transition log.

    Thread-safe: file-backed databases rely on SQLite's locking; the
    shared in-memory connection is additionally serialized by a lock.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._is_memory = self._db_path == ":memory:"
        self._lock = threading.RLock()

        if self._is_memory:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        else:
            self._persistent_conn = None

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with proper settings."""
        if self._persistent_conn is not None:
            return self._persistent_conn

        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a database transaction."""
        with self._lock if self._is_memory else nullcontext():
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if self._persistent_conn is None:
                    conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    # -----------------------------------------------------------------
    # Intent operations
    # -----------------------------------------------------------------

    def create(self, intent: PaymentIntent) -> bool:
        """Insert an intent row. Returns True if inserted, False if the id exists."""
        row = intent.to_dict()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._transaction() as conn:
            try:
                conn.execute(
                    f"INSERT INTO payment_intents ({', '.join(_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    tuple(row[col] for col in _COLUMNS),
                )
            except sqlite3.IntegrityError:
                return False
            self._append_event(
                conn,
                intent_id=intent.intent_id,
                from_status=None,
                to_status=intent.status,
                at=intent.created_at,
                detail={"amount": str(intent.amount)},
            )
        return True

    def get(self, intent_id: str) -> PaymentIntent | None:
        """Get an intent by id."""
        with self._transaction() as conn:
            row = self._fetch(conn, intent_id)
        if row is None:
            return None
        return PaymentIntent.from_dict(row)

    def conditional_update(
        self,
        intent_id: str,
        expected_status: IntentStatus,
        changes: Mapping[str, object],
        *,
        match: Mapping[str, object] | None = None,
        detail: Mapping[str, object] | None = None,
    ) -> UpdateResult:
        """Compare-status-and-swap. See IntentRepository.conditional_update."""
        validate_changes(expected_status, changes)
        if not changes:
            raise ValueError("changes must be non-empty")
        match = match or {}
        unknown = set(match) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"cannot match on unknown columns: {sorted(unknown)}")

        assignments = ", ".join(f"{col} = ?" for col in changes)
        guards = "".join(
            f" AND {col} IS NULL" for col in changes if col in WRITE_ONCE_FIELDS
        )
        guards += "".join(f" AND {col} = ?" for col in match)
        params: list[Any] = [_to_column(v) for v in changes.values()]
        params.extend([intent_id, expected_status.value])
        params.extend(_to_column(v) for v in match.values())

        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE payment_intents SET {assignments} "
                    f"WHERE intent_id = ? AND status = ?{guards}",
                    params,
                )
                updated = cursor.rowcount == 1
            except sqlite3.IntegrityError as exc:
                # target_tx_ref already recorded on another intent
                logger.error("intent %s: update refused: %s", intent_id, exc)
                updated = False

            if not updated:
                row = self._fetch(conn, intent_id)
                if row is None:
                    return UpdateResult(UpdateOutcome.NOT_FOUND)
                return UpdateResult(
                    UpdateOutcome.CONFLICT, PaymentIntent.from_dict(row)
                )

            new_status = changes.get("status")
            if new_status is not None and new_status != expected_status:
                at = changes.get("updated_at")
                self._append_event(
                    conn,
                    intent_id=intent_id,
                    from_status=expected_status,
                    to_status=IntentStatus(str(new_status)),
                    at=at if isinstance(at, datetime) else datetime.now(UTC),
                    detail=detail,
                )
            row = self._fetch(conn, intent_id)

        if row is None:
            return UpdateResult(UpdateOutcome.NOT_FOUND)
        return UpdateResult(UpdateOutcome.OK, PaymentIntent.from_dict(row))

    def list_by_status(
        self, status: IntentStatus, limit: int = 100
    ) -> list[PaymentIntent]:
        """List intents in a given status, ordered by created_at."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM payment_intents
                WHERE status = ?
                ORDER BY created_at, intent_id
                LIMIT ?
                """,
                (status.value, limit),
            ).fetchall()
        return [PaymentIntent.from_dict(dict(row)) for row in rows]

    # -----------------------------------------------------------------
    # Event log
    # -----------------------------------------------------------------

    def list_events(self, intent_id: str) -> list[IntentEvent]:
        """List all transition events for an intent, ordered by seq."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM intent_events
                WHERE intent_id = ?
                ORDER BY seq
                """,
                (intent_id,),
            ).fetchall()
        return [
            IntentEvent(
                intent_id=row["intent_id"],
                seq=row["seq"],
                from_status=IntentStatus(row["from_status"]) if row["from_status"] else None,
                to_status=IntentStatus(row["to_status"]),
                at=datetime.fromisoformat(row["at"]),
                detail=json.loads(row["detail_json"]),
            )
            for row in rows
        ]

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    @staticmethod
    def _fetch(conn: sqlite3.Connection, intent_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            "SELECT * FROM payment_intents WHERE intent_id = ?",
            (intent_id,),
        ).fetchone()
        return dict(row) if row is not None else None

    @staticmethod
    def _append_event(
        conn: sqlite3.Connection,
        *,
        intent_id: str,
        from_status: IntentStatus | None,
        to_status: IntentStatus,
        at: datetime,
        detail: Mapping[str, object] | None,
    ) -> None:
        (next_seq,) = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM intent_events WHERE intent_id = ?",
            (intent_id,),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO intent_events
            (intent_id, seq, from_status, to_status, at, detail_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                intent_id,
                next_seq,
                from_status.value if from_status else None,
                to_status.value,
                at.isoformat(),
                _detail_json(detail),
            ),
        )
        logger.debug(
            "intent %s: %s -> %s", intent_id,
            from_status.value if from_status else None, to_status.value,
        )

