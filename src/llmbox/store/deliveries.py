"""Append-only log of outbound delivery attempts."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from llmbox.domain.types import DeliveryOutcome
from llmbox.email.models import DeliveryAttempt
from llmbox.store.schema import Database, format_timestamp, utcnow


class DeliveryLog:
    """Persist every ``DeliveryAttempt`` against the inbound message it answers.

    Args:
        db: The shared pipeline database.
        clock: Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        db: Database,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._clock = clock

    def record(self, attempt: DeliveryAttempt, related_message_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO delivery_attempts (
                    outbound_id, related_message_id, attempt_number,
                    outcome, latency_ms, status_code, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.outbound_id,
                    related_message_id,
                    attempt.attempt_number,
                    attempt.outcome.value,
                    attempt.latency_ms,
                    attempt.status_code,
                    format_timestamp(self._clock()),
                ),
            )

    def attempts_for(self, related_message_id: str) -> list[DeliveryAttempt]:
        """All attempts recorded for *related_message_id*, oldest first."""
        with self._db.reading() as conn:
            rows = conn.execute(
                """
                SELECT outbound_id, attempt_number, outcome, latency_ms, status_code
                FROM delivery_attempts WHERE related_message_id = ? ORDER BY id
                """,
                (related_message_id,),
            ).fetchall()
        return [
            DeliveryAttempt(
                outbound_id=row[0],
                attempt_number=row[1],
                outcome=DeliveryOutcome(row[2]),
                latency_ms=row[3],
                status_code=row[4],
            )
            for row in rows
        ]

    def sequences_for(self, related_message_id: str) -> set[str]:
        """Distinct ``outbound_id`` values sent in answer to *related_message_id*.

        Idempotent replay keeps this at one sequence per inbound message.
        """
        return {attempt.outbound_id for attempt in self.attempts_for(related_message_id)}
