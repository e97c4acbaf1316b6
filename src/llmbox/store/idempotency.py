"""SQLite-backed idempotency guard keyed by inbound message id.

Failure policy: if the backing store errors, ``admit`` fails open to
``ACCEPTED`` and logs ``idempotency_store_unavailable``.  A rare duplicate run
is preferred over dropping a message; any duplicate is still metered through
the usage ledger like a normal request.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from llmbox.domain.models import IdempotencyRecord
from llmbox.domain.types import IdempotencyDecision
from llmbox.store.schema import Database, format_timestamp, parse_timestamp, utcnow

logger = structlog.get_logger()


class IdempotencyGuard:
    """Deduplicate inbound deliveries within a bounded time window.

    Args:
        db: The shared pipeline database.
        window_seconds: How long a message id blocks re-processing.
        clock: Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        db: Database,
        window_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    def admit(self, message_id: str) -> IdempotencyDecision:
        """Record *message_id* if no live record exists.

        An expired record for the same id is replaced, so the message is
        admitted again once the window has passed.

        Returns:
            ``ACCEPTED`` on first sighting, ``DUPLICATE`` while a live record exists.
        """
        now = self._clock()
        now_text = format_timestamp(now)
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "DELETE FROM idempotency_records WHERE message_id = ? AND expires_at <= ?",
                    (message_id, now_text),
                )
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO idempotency_records (
                        message_id, first_seen_at, expires_at
                    ) VALUES (?, ?, ?)
                    """,
                    (message_id, now_text, format_timestamp(now + self._window)),
                )
                inserted = cursor.rowcount == 1
        except sqlite3.Error as exc:
            logger.warning(
                "idempotency_store_unavailable",
                message_id=message_id,
                error=str(exc),
                policy="fail_open",
            )
            return IdempotencyDecision.ACCEPTED

        if inserted:
            return IdempotencyDecision.ACCEPTED

        logger.info("duplicate_message", message_id=message_id)
        return IdempotencyDecision.DUPLICATE

    def get(self, message_id: str) -> IdempotencyRecord | None:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT message_id, first_seen_at, expires_at FROM idempotency_records "
                "WHERE message_id = ?",
                (message_id,),
            ).fetchone()
        if row is None:
            return None
        return IdempotencyRecord(
            message_id=row[0],
            first_seen_at=parse_timestamp(row[1]),
            expires_at=parse_timestamp(row[2]),
        )

    def purge_expired(self) -> int:
        """Delete every expired record.  Returns the number of rows removed."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= ?",
                (format_timestamp(self._clock()),),
            )
        removed = cursor.rowcount
        if removed:
            logger.info("idempotency_records_purged", removed=removed)
        return removed
