"""Persistence: SQLite schema, idempotency guard, usage ledger, and delivery log."""

from llmbox.store.deliveries import DeliveryLog
from llmbox.store.idempotency import IdempotencyGuard
from llmbox.store.ledger import UsageLedger, normalize_account_id
from llmbox.store.schema import Database, close_db, init_db, open_database

__all__ = [
    "Database",
    "DeliveryLog",
    "IdempotencyGuard",
    "UsageLedger",
    "close_db",
    "init_db",
    "normalize_account_id",
    "open_database",
]
