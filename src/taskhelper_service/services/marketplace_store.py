"""SQLite-backed storage for tasks, bids, bookings, disputes and the lifecycle log."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from taskhelper_service.services.query_builder import PageQuery, build_page_query, split_page

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateBidError(Exception):
    """Raised when a bid already exists for a task/tasker pair."""


class DuplicateBookingError(Exception):
    """Raised when a task already has an active booking."""


class DuplicateDisputeError(Exception):
    """Raised when a dispute already exists for a booking."""


class DuplicateReviewError(Exception):
    """Raised when a reviewer already reviewed a booking."""


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_id() -> str:
    """Generate a new row identifier."""
    return str(uuid.uuid4())


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    category TEXT NOT NULL,
    subcategory TEXT,
    description TEXT NOT NULL,
    address TEXT NOT NULL,
    city TEXT NOT NULL,
    district TEXT,
    lat REAL NOT NULL,
    lng REAL NOT NULL,
    starts_at TEXT NOT NULL,
    flexibility_minutes INTEGER NOT NULL DEFAULT 0,
    pricing_model TEXT,
    currency TEXT NOT NULL,
    est_min_amount INTEGER,
    est_max_amount INTEGER,
    est_minutes INTEGER,
    structured_inputs TEXT NOT NULL DEFAULT '{}',
    bid_mode TEXT NOT NULL DEFAULT 'open_for_bids',
    state TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_client ON tasks(client_id, created_at);

CREATE TABLE IF NOT EXISTS task_candidates (
    task_id TEXT NOT NULL REFERENCES tasks(id),
    tasker_id TEXT NOT NULL,
    rank INTEGER NOT NULL,
    score REAL NOT NULL,
    added_at TEXT NOT NULL,
    PRIMARY KEY (task_id, tasker_id)
);

CREATE TABLE IF NOT EXISTS task_bids (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    tasker_id TEXT NOT NULL,
    amount INTEGER,
    currency TEXT NOT NULL,
    minimum_minutes INTEGER NOT NULL,
    message TEXT,
    can_start_at TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (task_id, tasker_id)
);

CREATE TABLE IF NOT EXISTS bid_messages (
    id TEXT PRIMARY KEY,
    bid_id TEXT NOT NULL REFERENCES task_bids(id),
    sender_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    text TEXT,
    media_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    client_id TEXT NOT NULL,
    tasker_id TEXT NOT NULL,
    status TEXT NOT NULL,
    agreed_rate_amount INTEGER,
    agreed_rate_currency TEXT NOT NULL,
    agreed_minimum_minutes INTEGER NOT NULL,
    bid_id TEXT REFERENCES task_bids(id),
    arrived_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_bookings_one_active
    ON bookings(task_id) WHERE status NOT IN ('canceled', 'disputed');
CREATE INDEX IF NOT EXISTS idx_bookings_tasker ON bookings(tasker_id, created_at);
CREATE INDEX IF NOT EXISTS idx_bookings_client ON bookings(client_id, created_at);

CREATE TABLE IF NOT EXISTS lifecycle_events (
    id TEXT PRIMARY KEY,
    aggregate_type TEXT NOT NULL CHECK (aggregate_type IN ('task', 'booking')),
    aggregate_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    reason TEXT,
    meta TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_aggregate
    ON lifecycle_events(aggregate_type, aggregate_id, created_at);

CREATE TRIGGER IF NOT EXISTS lifecycle_events_no_update
BEFORE UPDATE ON lifecycle_events
BEGIN
    SELECT RAISE(ABORT, 'lifecycle_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS lifecycle_events_no_delete
BEFORE DELETE ON lifecycle_events
BEGIN
    SELECT RAISE(ABORT, 'lifecycle_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS bid_messages_no_update
BEFORE UPDATE ON bid_messages
BEGIN
    SELECT RAISE(ABORT, 'bid_messages is append-only');
END;

CREATE TABLE IF NOT EXISTS disputes (
    id TEXT PRIMARY KEY,
    booking_id TEXT NOT NULL UNIQUE REFERENCES bookings(id),
    opened_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    amount_in_question INTEGER,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    resolution TEXT,
    resolved_by TEXT,
    resolved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS dispute_evidence (
    id TEXT PRIMARY KEY,
    dispute_id TEXT NOT NULL REFERENCES disputes(id),
    user_id TEXT NOT NULL,
    evidence TEXT NOT NULL,
    added_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS dispute_evidence_no_update
BEFORE UPDATE ON dispute_evidence
BEGIN
    SELECT RAISE(ABORT, 'dispute_evidence is append-only');
END;

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    booking_id TEXT NOT NULL REFERENCES bookings(id),
    reviewer_id TEXT NOT NULL,
    reviewee_id TEXT NOT NULL,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    tags TEXT NOT NULL DEFAULT '[]',
    comment TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (booking_id, reviewer_id)
);
"""

_JSON_COLUMNS: dict[str, tuple[str, ...]] = {
    "tasks": ("structured_inputs",),
    "lifecycle_events": ("meta",),
    "disputes": ("resolution",),
    "reviews": ("tags",),
}

_TASK_UPDATABLE: frozenset[str] = frozenset(
    {
        "description",
        "starts_at",
        "flexibility_minutes",
        "structured_inputs",
        "bid_mode",
        "state",
        "updated_at",
    }
)
_BID_UPDATABLE: frozenset[str] = frozenset(
    {
        "amount",
        "currency",
        "minimum_minutes",
        "message",
        "can_start_at",
        "status",
        "updated_at",
    }
)
_BOOKING_UPDATABLE: frozenset[str] = frozenset(
    {"status", "arrived_at", "started_at", "completed_at", "updated_at"}
)
_DISPUTE_UPDATABLE: frozenset[str] = frozenset(
    {"status", "resolution", "resolved_by", "resolved_at", "updated_at"}
)


class MarketplaceStore:
    """
    SQLite-backed storage for the marketplace.

    Reads may run anywhere. Writes must run inside ``transaction()``, which
    holds the store lock and an IMMEDIATE transaction for its whole body and
    rolls everything back if the body raises.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(_SCHEMA)

    # ------------------------------------------------------------------
    # Transactions and row helpers
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes atomically."""
        with self._lock:
            if self._db.in_transaction:
                msg = "Nested transactions are not supported"
                raise RuntimeError(msg)
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._db.execute("ROLLBACK")
                raise
            self._db.execute("COMMIT")

    def _require_transaction(self) -> None:
        if not self._db.in_transaction:
            msg = "Write attempted outside of a transaction"
            raise RuntimeError(msg)

    def _row_to_dict(self, table: str, row: sqlite3.Row) -> dict[str, Any]:
        data = {key: row[key] for key in row.keys()}  # noqa: SIM118
        for column in _JSON_COLUMNS.get(table, ()):
            raw = data.get(column)
            data[column] = json.loads(raw) if raw is not None else None
        return data

    def _fetch_one(self, table: str, sql: str, params: tuple[object, ...]) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(sql, params).fetchone()
        if row is None:
            return None
        return self._row_to_dict(table, row)

    def _fetch_all(self, table: str, sql: str, params: tuple[object, ...]) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [self._row_to_dict(table, row) for row in rows]

    def _insert(self, table: str, data: dict[str, Any]) -> None:
        self._require_transaction()
        values = dict(data)
        for column in _JSON_COLUMNS.get(table, ()):
            if column in values and values[column] is not None:
                values[column] = json.dumps(values[column])
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self._db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",  # nosec B608
            tuple(values.values()),
        )

    def _update(
        self,
        table: str,
        allowed: frozenset[str],
        row_id: str,
        updates: dict[str, Any],
        status_column: str | None,
        expected_status: str | None,
    ) -> int:
        self._require_transaction()
        if len(updates) == 0:
            return 0
        if any(column not in allowed for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)

        values = dict(updates)
        for column in _JSON_COLUMNS.get(table, ()):
            if column in values and values[column] is not None:
                values[column] = json.dumps(values[column])

        set_clause = ", ".join(f"{column} = ?" for column in values)
        params: list[object] = list(values.values())
        query = f"UPDATE {table} SET {set_clause} WHERE id = ?"  # nosec B608
        params.append(row_id)
        if expected_status is not None and status_column is not None:
            query += f" AND {status_column} = ?"
            params.append(expected_status)

        cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def fetch_page(self, query: PageQuery) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one keyset page for the given filter."""
        sql, params = build_page_query(query)
        rows = self._fetch_all(query.table, sql, tuple(params))
        return split_page(rows, query.limit)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        self._insert("tasks", task_data)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        return self._fetch_one("tasks", "SELECT * FROM tasks WHERE id = ?", (task_id,))

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_state: str | None = None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        return self._update("tasks", _TASK_UPDATABLE, task_id, updates, "state", expected_state)

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_state(self) -> dict[str, int]:
        """Count tasks grouped by state."""
        with self._lock:
            rows = self._db.execute("SELECT state, COUNT(*) FROM tasks GROUP BY state").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def upsert_candidate(self, task_id: str, tasker_id: str, rank: int, score: float) -> None:
        """Add a tasker to a task's candidate list, refreshing rank and score."""
        self._require_transaction()
        self._db.execute(
            """
            INSERT INTO task_candidates (task_id, tasker_id, rank, score, added_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (task_id, tasker_id) DO UPDATE SET rank = excluded.rank,
                score = excluded.score
            """,
            (task_id, tasker_id, rank, score, now_iso()),
        )

    def remove_candidate(self, task_id: str, tasker_id: str) -> int:
        """Remove a tasker from a task's candidate list."""
        self._require_transaction()
        cursor = self._db.execute(
            "DELETE FROM task_candidates WHERE task_id = ? AND tasker_id = ?",
            (task_id, tasker_id),
        )
        return int(cursor.rowcount)

    def is_candidate(self, task_id: str, tasker_id: str) -> bool:
        """Check whether the task was offered to the tasker."""
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM task_candidates WHERE task_id = ? AND tasker_id = ?",
                (task_id, tasker_id),
            ).fetchone()
        return row is not None

    def list_candidates(self, task_id: str) -> list[dict[str, Any]]:
        """List a task's candidates by rank."""
        return self._fetch_all(
            "task_candidates",
            "SELECT task_id, tasker_id, rank, score, added_at FROM task_candidates "
            "WHERE task_id = ? ORDER BY rank, tasker_id",
            (task_id,),
        )

    # ------------------------------------------------------------------
    # Bids and negotiation messages
    # ------------------------------------------------------------------

    def insert_bid(self, bid_data: dict[str, Any]) -> None:
        """Insert a bid. At most one bid exists per (task, tasker)."""
        try:
            self._insert("task_bids", bid_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateBidError("A bid already exists for this task and tasker") from exc
            raise

    def get_bid(self, bid_id: str) -> dict[str, Any] | None:
        """Fetch a bid by ID."""
        return self._fetch_one("task_bids", "SELECT * FROM task_bids WHERE id = ?", (bid_id,))

    def get_bid_for_pair(self, task_id: str, tasker_id: str) -> dict[str, Any] | None:
        """Fetch the bid a tasker holds on a task, if any."""
        return self._fetch_one(
            "task_bids",
            "SELECT * FROM task_bids WHERE task_id = ? AND tasker_id = ?",
            (task_id, tasker_id),
        )

    def update_bid(
        self,
        bid_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> int:
        """Update bid columns and return the number of affected rows."""
        return self._update("task_bids", _BID_UPDATABLE, bid_id, updates, "status", expected_status)

    def decline_other_pending_bids(self, task_id: str, accepted_bid_id: str, updated_at: str) -> int:
        """Decline every pending bid on the task except the accepted one."""
        self._require_transaction()
        cursor = self._db.execute(
            "UPDATE task_bids SET status = 'declined', updated_at = ? "
            "WHERE task_id = ? AND id != ? AND status = 'pending'",
            (updated_at, task_id, accepted_bid_id),
        )
        return int(cursor.rowcount)

    def list_bids_for_task(self, task_id: str, tasker_id: str | None = None) -> list[dict[str, Any]]:
        """List bids on a task, oldest first, optionally for a single tasker."""
        if tasker_id is None:
            return self._fetch_all(
                "task_bids",
                "SELECT * FROM task_bids WHERE task_id = ? ORDER BY created_at, id",
                (task_id,),
            )
        return self._fetch_all(
            "task_bids",
            "SELECT * FROM task_bids WHERE task_id = ? AND tasker_id = ? ORDER BY created_at, id",
            (task_id, tasker_id),
        )

    def insert_message(self, message_data: dict[str, Any]) -> None:
        """Insert a negotiation message."""
        self._insert("bid_messages", message_data)

    def get_message(self, message_id: str) -> dict[str, Any] | None:
        """Fetch a negotiation message by ID."""
        return self._fetch_one("bid_messages", "SELECT * FROM bid_messages WHERE id = ?", (message_id,))

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def insert_booking(self, booking_data: dict[str, Any]) -> None:
        """Insert a booking. The partial unique index allows one active booking per task."""
        try:
            self._insert("bookings", booking_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateBookingError("Task already has an active booking") from exc
            raise

    def get_booking(self, booking_id: str) -> dict[str, Any] | None:
        """Fetch a booking with its task's client and state."""
        return self._fetch_one(
            "bookings",
            "SELECT b.*, t.state AS task_state "
            "FROM bookings b JOIN tasks t ON b.task_id = t.id WHERE b.id = ?",
            (booking_id,),
        )

    def find_active_booking(self, task_id: str) -> dict[str, Any] | None:
        """Return the task's active booking (not canceled or disputed), if any."""
        return self._fetch_one(
            "bookings",
            "SELECT * FROM bookings WHERE task_id = ? AND status NOT IN ('canceled', 'disputed')",
            (task_id,),
        )

    def list_open_bookings(self, task_id: str) -> list[dict[str, Any]]:
        """List bookings on a task that have not reached a terminal status."""
        return self._fetch_all(
            "bookings",
            "SELECT * FROM bookings WHERE task_id = ? "
            "AND status NOT IN ('completed', 'canceled', 'disputed') ORDER BY created_at",
            (task_id,),
        )

    def has_booking_for_tasker(self, task_id: str, tasker_id: str) -> bool:
        """Check whether the tasker ever held a booking on the task."""
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM bookings WHERE task_id = ? AND tasker_id = ? LIMIT 1",
                (task_id, tasker_id),
            ).fetchone()
        return row is not None

    def update_booking(
        self,
        booking_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> int:
        """Update booking columns and return the number of affected rows."""
        return self._update(
            "bookings", _BOOKING_UPDATABLE, booking_id, updates, "status", expected_status
        )

    # ------------------------------------------------------------------
    # Lifecycle events (append-only)
    # ------------------------------------------------------------------

    def append_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        from_state: str | None,
        to_state: str,
        actor_id: str,
        actor_role: str,
        *,
        reason: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append one immutable state-change record and return it."""
        event = {
            "id": new_id(),
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "from_state": from_state,
            "to_state": to_state,
            "actor_id": actor_id,
            "actor_role": actor_role,
            "reason": reason,
            "meta": meta if meta is not None else {},
            "created_at": now_iso(),
        }
        self._insert("lifecycle_events", event)
        return event

    def list_events(self, aggregate_type: str, aggregate_id: str) -> list[dict[str, Any]]:
        """List an aggregate's events in the order they were written."""
        return self._fetch_all(
            "lifecycle_events",
            "SELECT * FROM lifecycle_events WHERE aggregate_type = ? AND aggregate_id = ? "
            "ORDER BY created_at, rowid",
            (aggregate_type, aggregate_id),
        )

    def list_task_timeline(self, task_id: str) -> list[dict[str, Any]]:
        """Merge a task's events with the events of every booking on that task."""
        return self._fetch_all(
            "lifecycle_events",
            """
            SELECT * FROM lifecycle_events
            WHERE (aggregate_type = 'task' AND aggregate_id = ?)
               OR (aggregate_type = 'booking'
                   AND aggregate_id IN (SELECT id FROM bookings WHERE task_id = ?))
            ORDER BY created_at, rowid
            """,
            (task_id, task_id),
        )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def insert_dispute(self, dispute_data: dict[str, Any]) -> None:
        """Insert a dispute. At most one dispute exists per booking."""
        try:
            self._insert("disputes", dispute_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateDisputeError("A dispute already exists for this booking") from exc
            raise

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Fetch a dispute with its booking parties and evidence list."""
        dispute = self._fetch_one(
            "disputes",
            "SELECT d.*, b.tasker_id AS tasker_id, b.task_id AS task_id, "
            "b.client_id AS client_id "
            "FROM disputes d JOIN bookings b ON d.booking_id = b.id WHERE d.id = ?",
            (dispute_id,),
        )
        if dispute is None:
            return None
        dispute["evidence"] = self.list_evidence(dispute_id)
        return dispute

    def get_dispute_for_booking(self, booking_id: str) -> dict[str, Any] | None:
        """Fetch the dispute opened against a booking, if any."""
        return self._fetch_one(
            "disputes", "SELECT * FROM disputes WHERE booking_id = ?", (booking_id,)
        )

    def update_dispute(
        self,
        dispute_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> int:
        """Update dispute columns and return the number of affected rows."""
        return self._update(
            "disputes", _DISPUTE_UPDATABLE, dispute_id, updates, "status", expected_status
        )

    def insert_evidence(self, dispute_id: str, user_id: str, evidence: str) -> dict[str, Any]:
        """Append an evidence entry to a dispute."""
        entry = {
            "id": new_id(),
            "dispute_id": dispute_id,
            "user_id": user_id,
            "evidence": evidence,
            "added_at": now_iso(),
        }
        self._insert("dispute_evidence", entry)
        return entry

    def list_evidence(self, dispute_id: str) -> list[dict[str, Any]]:
        """List a dispute's evidence in submission order."""
        return self._fetch_all(
            "dispute_evidence",
            "SELECT user_id, evidence, added_at FROM dispute_evidence "
            "WHERE dispute_id = ? ORDER BY added_at, rowid",
            (dispute_id,),
        )

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def insert_review(self, review_data: dict[str, Any]) -> None:
        """Insert a review. One review per reviewer per booking."""
        try:
            self._insert("reviews", review_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateReviewError("Review already exists for this booking") from exc
            raise

    def get_review(self, review_id: str) -> dict[str, Any] | None:
        """Fetch a review by ID."""
        return self._fetch_one("reviews", "SELECT * FROM reviews WHERE id = ?", (review_id,))

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
