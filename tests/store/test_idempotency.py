"""Tests for the SQLite-backed IdempotencyGuard."""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock

from llmbox.domain.types import IdempotencyDecision
from llmbox.store.idempotency import IdempotencyGuard
from llmbox.store.schema import Database

MESSAGE_ID = "<abc-123@mail.example.com>"


class TestAdmit:
    """IdempotencyGuard.admit within and after the dedup window."""

    def test_first_sighting_is_accepted(self, db: Database, clock) -> None:
        guard = IdempotencyGuard(db, window_seconds=600, clock=clock)

        assert guard.admit(MESSAGE_ID) is IdempotencyDecision.ACCEPTED

    def test_repeat_within_window_is_duplicate(
        self, db: Database, clock
    ) -> None:
        guard = IdempotencyGuard(db, window_seconds=600, clock=clock)
        guard.admit(MESSAGE_ID)
        clock.advance(seconds=599)

        assert guard.admit(MESSAGE_ID) is IdempotencyDecision.DUPLICATE

    def test_repeat_after_window_is_accepted_again(
        self, db: Database, clock
    ) -> None:
        guard = IdempotencyGuard(db, window_seconds=600, clock=clock)
        guard.admit(MESSAGE_ID)
        clock.advance(seconds=600)

        assert guard.admit(MESSAGE_ID) is IdempotencyDecision.ACCEPTED

    def test_distinct_ids_do_not_collide(self, db: Database, clock) -> None:
        guard = IdempotencyGuard(db, clock=clock)

        assert guard.admit("<a@x>") is IdempotencyDecision.ACCEPTED
        assert guard.admit("<b@x>") is IdempotencyDecision.ACCEPTED

    def test_record_carries_window_bounds(self, db: Database, clock) -> None:
        guard = IdempotencyGuard(db, window_seconds=600, clock=clock)
        guard.admit(MESSAGE_ID)

        record = guard.get(MESSAGE_ID)

        assert record is not None
        assert record.first_seen_at == clock.now
        assert (record.expires_at - record.first_seen_at).total_seconds() == 600

    def test_get_unknown_returns_none(self, db: Database) -> None:
        guard = IdempotencyGuard(db)

        assert guard.get("<missing@x>") is None


class TestFailurePolicy:
    """Store errors fail open so messages are never silently dropped."""

    def test_store_error_fails_open(self) -> None:
        conn = MagicMock()
        conn.__enter__.return_value = conn
        conn.execute.side_effect = sqlite3.OperationalError("database is locked")
        guard = IdempotencyGuard(Database(conn))

        assert guard.admit(MESSAGE_ID) is IdempotencyDecision.ACCEPTED


class TestPurgeExpired:
    """IdempotencyGuard.purge_expired."""

    def test_removes_only_expired_records(self, db: Database, clock) -> None:
        guard = IdempotencyGuard(db, window_seconds=600, clock=clock)
        guard.admit("<old@x>")
        clock.advance(seconds=300)
        guard.admit("<new@x>")
        clock.advance(seconds=301)

        removed = guard.purge_expired()

        assert removed == 1
        assert guard.get("<old@x>") is None
        assert guard.get("<new@x>") is not None
