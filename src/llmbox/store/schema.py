"""SQLite schema for the idempotency guard, usage ledger, and delivery log.

Money columns are integer micro-USD (1/1,000,000 USD) so quota checks can be
done as exact integer arithmetic inside a single conditional UPDATE.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

# Fixed-width UTC format so stored timestamps compare correctly as strings.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def init_db(db_path: Path | str) -> sqlite3.Connection:
    """Open the pipeline database, enable WAL mode, and create all tables.

    The connection is created with ``check_same_thread=False``.  Wrap it in a
    ``Database`` before sharing it across threads.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.

    Returns:
        An open sqlite3.Connection with the schema in place.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    create_tables(conn)
    return conn


class Database:
    """The pipeline connection and the one lock that serializes its use.

    The idempotency guard, usage ledger, delivery log and readiness probe all
    share one ``Database``.  A transaction opened through it never interleaves
    with statements from another thread, so a commit or rollback always ends
    the caller's own transaction.

    Args:
        conn: An open connection with the pipeline schema in place.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for one transaction; commit on success, else roll back."""
        with self._lock, self.conn:
            yield self.conn

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            yield self.conn

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def open_database(db_path: Path | str) -> Database:
    """``init_db`` wrapped in a ``Database`` ready to be shared."""
    return Database(init_db(db_path))


def create_tables(conn: sqlite3.Connection) -> None:
    """Create every table and index if it does not already exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS idempotency_records (
            message_id TEXT PRIMARY KEY,
            first_seen_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_idem_expires ON idempotency_records (expires_at)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            account_id TEXT PRIMARY KEY,
            tier TEXT NOT NULL,
            subscription_state TEXT NOT NULL,
            cost_limit_micros INTEGER NOT NULL,
            cost_used_micros INTEGER NOT NULL DEFAULT 0,
            cost_reserved_micros INTEGER NOT NULL DEFAULT 0,
            period_started_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (cost_used_micros >= 0),
            CHECK (cost_reserved_micros >= 0)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS reservations (
            reservation_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts (account_id),
            related_message_id TEXT NOT NULL,
            estimated_micros INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            settled_at TEXT
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_reservations_account ON reservations (account_id)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS usage_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL REFERENCES accounts (account_id),
            related_message_id TEXT NOT NULL,
            input_tokens INTEGER NOT NULL,
            output_tokens INTEGER NOT NULL,
            model TEXT NOT NULL,
            cost_micros INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_usage_account ON usage_events (account_id)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS delivery_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            outbound_id TEXT NOT NULL,
            related_message_id TEXT NOT NULL,
            attempt_number INTEGER NOT NULL,
            outcome TEXT NOT NULL,
            latency_ms REAL NOT NULL,
            status_code INTEGER,
            created_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_delivery_related ON delivery_attempts (related_message_id)"
    )

    conn.commit()


def close_db(db: Database) -> None:
    """Close the pipeline database connection."""
    db.close()
