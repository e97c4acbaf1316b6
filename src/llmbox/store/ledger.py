"""Usage ledger: per-account cost accounting and admission control.

The ledger is the only writer of an account's ``cost_used`` and
``cost_reserved`` counters.  Admission is a reservation against the quota:

1. ``check_and_reserve`` holds the estimated cost with a single conditional
   UPDATE on the account row (compare-and-set), so concurrent requests for
   the same account can never collectively reserve past ``cost_limit``.
2. ``commit`` swaps the estimate for the measured cost and appends a usage
   event in the same transaction.
3. ``release`` drops the estimate when the completion produced nothing
   billable.
4. ``release_stale`` returns holds that were never settled, so a crash or a
   failed commit cannot shrink an account's quota for good.

Every statement goes through the shared ``Database``, whose single lock
serializes the connection across accounts.  SQLite admits one writer per
database, so a per-account lock would not let writes run in parallel.

``sum(usage_events.cost) == cost_used`` holds for the current billing period
after every committed transaction.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import structlog

from llmbox.domain.errors import UnknownReservationError
from llmbox.domain.models import Account, AdmissionResult, Reservation, UsageEvent
from llmbox.domain.types import (
    ADMISSIBLE_STATES,
    AccountTier,
    AdmissionOutcome,
    RejectionReason,
    ReservationStatus,
    SubscriptionState,
)
from llmbox.llm.pricing import format_cost, from_micros, to_micros
from llmbox.observability.metrics import (
    ADMISSION_DECISIONS,
    QUOTA_OVERSHOOTS,
    USAGE_COST_USD,
)
from llmbox.store.schema import Database, format_timestamp, parse_timestamp, utcnow

logger = structlog.get_logger()

_ACCOUNT_COLUMNS = (
    "account_id, tier, subscription_state, cost_limit_micros, "
    "cost_used_micros, cost_reserved_micros"
)

_RESERVATION_COLUMNS = (
    "reservation_id, account_id, related_message_id, estimated_micros, "
    "status, created_at, settled_at"
)

_ADMISSIBLE_VALUES = tuple(sorted(state.value for state in ADMISSIBLE_STATES))


def normalize_account_id(account_id: str) -> str:
    """Accounts are keyed by lower-cased sender address."""
    return account_id.strip().lower()


class UsageLedger:
    """Per-account quota ledger backed by SQLite.

    Args:
        db: The shared pipeline database.
        free_tier_cost_limit: Limit given to accounts provisioned on first sight.
        overshoot_tolerance: Largest overshoot past ``cost_limit`` that is
            logged as a warning; anything larger is logged as an error.
        warning_ratio: Usage fraction at which ``quota_approaching_limit`` is logged.
        clock: Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        db: Database,
        *,
        free_tier_cost_limit: Decimal = Decimal("1.00"),
        overshoot_tolerance: Decimal = Decimal("0.05"),
        warning_ratio: float = 0.8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._free_tier_limit_micros = to_micros(free_tier_cost_limit)
        self._overshoot_tolerance = overshoot_tolerance
        self._warning_ratio = warning_ratio
        self._clock = clock

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_or_create_account(self, account_id: str) -> Account:
        """Return the account, provisioning a free-tier one on first sight."""
        account_id = normalize_account_id(account_id)
        with self._db.transaction() as conn:
            created = self._insert_default_account(conn, account_id)
            account = self._read_account(conn, account_id)
        if created:
            logger.info(
                "account_provisioned",
                account_id=account_id,
                tier=account.tier,
                cost_limit=str(account.cost_limit),
            )
        return account

    def get_account(self, account_id: str) -> Account | None:
        account_id = normalize_account_id(account_id)
        with self._db.reading() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        return None if row is None else self._row_to_account(row)

    def apply_subscription_state(
        self,
        account_id: str,
        state: SubscriptionState,
        *,
        tier: AccountTier | None = None,
        cost_limit: Decimal | None = None,
    ) -> Account:
        """Apply a billing-collaborator update.  Never called by the pipeline."""
        account_id = normalize_account_id(account_id)
        now = format_timestamp(self._clock())
        with self._db.transaction() as conn:
            self._insert_default_account(conn, account_id)
            conn.execute(
                """
                UPDATE accounts SET
                    subscription_state = ?,
                    tier = COALESCE(?, tier),
                    cost_limit_micros = COALESCE(?, cost_limit_micros),
                    updated_at = ?
                WHERE account_id = ?
                """,
                (
                    state.value,
                    tier.value if tier is not None else None,
                    to_micros(cost_limit) if cost_limit is not None else None,
                    now,
                    account_id,
                ),
            )
            account = self._read_account(conn, account_id)
        logger.info(
            "subscription_state_applied",
            account_id=account_id,
            subscription_state=account.subscription_state,
            tier=account.tier,
        )
        return account

    def reset_period(self, account_id: str) -> Account:
        """Start a new billing period: zero ``cost_used``.  Billing collaborator only.

        An unknown account is provisioned first, like ``apply_subscription_state``.
        """
        account_id = normalize_account_id(account_id)
        now = format_timestamp(self._clock())
        with self._db.transaction() as conn:
            self._insert_default_account(conn, account_id)
            conn.execute(
                "UPDATE accounts SET cost_used_micros = 0, period_started_at = ?, "
                "updated_at = ? WHERE account_id = ?",
                (now, now, account_id),
            )
            account = self._read_account(conn, account_id)
        logger.info("billing_period_reset", account_id=account_id)
        return account

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    def check_and_reserve(
        self,
        account_id: str,
        estimated_cost: Decimal,
        related_message_id: str = "",
    ) -> AdmissionResult:
        """Admit the request and hold *estimated_cost*, or reject it.

        ``past_due`` accounts are rejected with their own reason regardless of
        remaining quota; ``canceled`` accounts are ``subscription_inactive``.

        Args:
            account_id: The account (sender address) to charge.
            estimated_cost: Upper-bound cost of the pending completion.
            related_message_id: Inbound message id, kept on the reservation.

        Returns:
            An ``AdmissionResult`` with a reservation id when admitted.
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost must not be negative")

        account_id = normalize_account_id(account_id)
        estimate_micros = to_micros(estimated_cost)
        now = format_timestamp(self._clock())
        reservation_id: str | None = None
        reason: RejectionReason | None = None

        with self._db.transaction() as conn:
            self._insert_default_account(conn, account_id)
            account = self._read_account(conn, account_id)

            if account.subscription_state is SubscriptionState.PAST_DUE:
                reason = RejectionReason.PAST_DUE
            elif account.subscription_state not in ADMISSIBLE_STATES:
                reason = RejectionReason.SUBSCRIPTION_INACTIVE
            else:
                placeholders = ", ".join("?" for _ in _ADMISSIBLE_VALUES)
                cursor = conn.execute(
                    f"""
                    UPDATE accounts SET
                        cost_reserved_micros = cost_reserved_micros + ?,
                        updated_at = ?
                    WHERE account_id = ?
                      AND subscription_state IN ({placeholders})
                      AND cost_used_micros < cost_limit_micros
                      AND cost_used_micros + cost_reserved_micros + ? <= cost_limit_micros
                    """,
                    (estimate_micros, now, account_id, *_ADMISSIBLE_VALUES, estimate_micros),
                )
                if cursor.rowcount == 1:
                    reservation_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO reservations (
                            reservation_id, account_id, related_message_id,
                            estimated_micros, status, created_at
                        ) VALUES (?, ?, ?, ?, 'pending', ?)
                        """,
                        (reservation_id, account_id, related_message_id, estimate_micros, now),
                    )
                else:
                    reason = RejectionReason.QUOTA_EXCEEDED
            account = self._read_account(conn, account_id)

        if reservation_id is not None:
            ADMISSION_DECISIONS.labels(decision=AdmissionOutcome.ADMITTED.value).inc()
            logger.info(
                "admission_granted",
                account_id=account_id,
                reservation_id=reservation_id,
                estimated_cost=format_cost(estimated_cost),
                remaining_budget=format_cost(account.remaining_budget),
            )
            if account.usage_ratio >= self._warning_ratio:
                logger.warning(
                    "quota_approaching_limit",
                    account_id=account_id,
                    tier=account.tier,
                    cost_used=format_cost(account.cost_used),
                    cost_limit=format_cost(account.cost_limit),
                    percent_used=round(account.usage_ratio * 100, 1),
                )
            return AdmissionResult(
                outcome=AdmissionOutcome.ADMITTED,
                account=account,
                reservation_id=reservation_id,
            )

        ADMISSION_DECISIONS.labels(decision=str(reason)).inc()
        detail = (
            f"cost_used={format_cost(account.cost_used)} "
            f"reserved={format_cost(account.cost_reserved)} "
            f"estimate={format_cost(estimated_cost)} limit={format_cost(account.cost_limit)}"
        )
        return AdmissionResult(
            outcome=AdmissionOutcome.REJECTED,
            account=account,
            reason=reason,
            detail=detail,
        )

    def commit(
        self,
        reservation_id: str,
        actual_cost: Decimal,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str = "",
    ) -> UsageEvent:
        """Replace the reservation's estimate with *actual_cost* and record usage.

        An actual cost above the estimate may push the account past its limit.
        The overshoot is logged and counted but never rolled back: the reply
        has already been generated.

        Raises:
            UnknownReservationError: The reservation is missing or already settled.
        """
        if actual_cost < 0:
            raise ValueError("actual_cost must not be negative")

        actual_micros = to_micros(actual_cost)
        now_dt = self._clock()
        now = format_timestamp(now_dt)

        with self._db.transaction() as conn:
            reservation = self._read_reservation(conn, reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.PENDING:
                raise UnknownReservationError(reservation_id)
            account_id = reservation.account_id
            related_message_id = reservation.related_message_id
            estimate_micros = to_micros(reservation.estimated_cost)

            conn.execute(
                "UPDATE reservations SET status = ?, settled_at = ? WHERE reservation_id = ?",
                (ReservationStatus.COMMITTED.value, now, reservation_id),
            )
            conn.execute(
                """
                UPDATE accounts SET
                    cost_reserved_micros = cost_reserved_micros - ?,
                    cost_used_micros = cost_used_micros + ?,
                    updated_at = ?
                WHERE account_id = ?
                """,
                (estimate_micros, actual_micros, now, account_id),
            )
            conn.execute(
                """
                INSERT INTO usage_events (
                    account_id, related_message_id, input_tokens, output_tokens,
                    model, cost_micros, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    related_message_id,
                    input_tokens,
                    output_tokens,
                    model,
                    actual_micros,
                    now,
                ),
            )
            account = self._read_account(conn, account_id)

        cost = from_micros(actual_micros)
        USAGE_COST_USD.inc(float(cost))
        logger.info(
            "usage_committed",
            account_id=account_id,
            reservation_id=reservation_id,
            cost=format_cost(cost),
            estimated_cost=format_cost(from_micros(estimate_micros)),
            cost_used=format_cost(account.cost_used),
            remaining_budget=format_cost(account.remaining_budget),
        )

        overshoot = account.cost_used - account.cost_limit
        if overshoot > 0:
            QUOTA_OVERSHOOTS.inc()
            log_method = (
                logger.warning if overshoot <= self._overshoot_tolerance else logger.error
            )
            log_method(
                "quota_overshoot",
                account_id=account_id,
                overshoot=format_cost(overshoot),
                tolerance=format_cost(self._overshoot_tolerance),
                cost_used=format_cost(account.cost_used),
                cost_limit=format_cost(account.cost_limit),
            )

        return UsageEvent(
            account_id=account_id,
            related_message_id=related_message_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            cost_computed=cost,
            created_at=now_dt,
        )

    def release(self, reservation_id: str) -> bool:
        """Return a pending reservation without recording cost.

        Returns:
            ``True`` if a pending reservation was released, ``False`` if it was
            unknown or already settled.
        """
        now = format_timestamp(self._clock())
        with self._db.transaction() as conn:
            reservation = self._read_reservation(conn, reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.PENDING:
                return False
            self._return_hold(conn, reservation, ReservationStatus.RELEASED, now)
        logger.info(
            "reservation_released",
            account_id=reservation.account_id,
            reservation_id=reservation_id,
        )
        return True

    def release_stale(self, older_than: timedelta) -> int:
        """Return every hold still pending after *older_than*.

        A reservation stays pending when the process dies between admission
        and settlement, or when ``commit`` fails.  Swept holds are marked
        ``expired``; no cost is recorded for them.

        Returns:
            The number of reservations released.
        """
        now_dt = self._clock()
        now = format_timestamp(now_dt)
        cutoff = format_timestamp(now_dt - older_than)
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT {_RESERVATION_COLUMNS} FROM reservations "
                "WHERE status = ? AND created_at <= ? ORDER BY created_at",
                (ReservationStatus.PENDING.value, cutoff),
            ).fetchall()
            stale = [self._row_to_reservation(row) for row in rows]
            for reservation in stale:
                self._return_hold(conn, reservation, ReservationStatus.EXPIRED, now)

        for reservation in stale:
            logger.warning(
                "stale_reservation_released",
                account_id=reservation.account_id,
                reservation_id=reservation.reservation_id,
                related_message_id=reservation.related_message_id,
                estimated_cost=format_cost(reservation.estimated_cost),
            )
        return len(stale)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._db.reading() as conn:
            return self._read_reservation(conn, reservation_id)

    def usage_events(self, account_id: str) -> list[UsageEvent]:
        account_id = normalize_account_id(account_id)
        with self._db.reading() as conn:
            rows = conn.execute(
                """
                SELECT account_id, related_message_id, input_tokens, output_tokens,
                       model, cost_micros, created_at
                FROM usage_events WHERE account_id = ? ORDER BY id
                """,
                (account_id,),
            ).fetchall()
        return [
            UsageEvent(
                account_id=row[0],
                related_message_id=row[1],
                input_tokens=row[2],
                output_tokens=row[3],
                model=row[4],
                cost_computed=from_micros(row[5]),
                created_at=parse_timestamp(row[6]),
            )
            for row in rows
        ]

    def reconcile(self, account_id: str) -> bool:
        """Check that this period's usage events sum to ``cost_used``."""
        account_id = normalize_account_id(account_id)
        with self._db.reading() as conn:
            row = conn.execute(
                """
                SELECT a.cost_used_micros,
                       COALESCE((SELECT SUM(u.cost_micros) FROM usage_events u
                                 WHERE u.account_id = a.account_id
                                   AND u.created_at >= a.period_started_at), 0)
                FROM accounts a WHERE a.account_id = ?
                """,
                (account_id,),
            ).fetchone()
        if row is None:
            return True
        cost_used_micros, events_micros = row
        if cost_used_micros != events_micros:
            logger.error(
                "ledger_reconciliation_mismatch",
                account_id=account_id,
                cost_used=format_cost(from_micros(cost_used_micros)),
                usage_events_total=format_cost(from_micros(events_micros)),
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Internals (callers hold an open transaction)
    # ------------------------------------------------------------------

    def _insert_default_account(self, conn: sqlite3.Connection, account_id: str) -> bool:
        now = format_timestamp(self._clock())
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO accounts (
                account_id, tier, subscription_state, cost_limit_micros,
                cost_used_micros, cost_reserved_micros, period_started_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, 0, ?, ?, ?)
            """,
            (
                account_id,
                AccountTier.FREE.value,
                SubscriptionState.FREE.value,
                self._free_tier_limit_micros,
                now,
                now,
                now,
            ),
        )
        return cursor.rowcount == 1

    def _read_account(self, conn: sqlite3.Connection, account_id: str) -> Account:
        row = conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        return self._row_to_account(row)

    @staticmethod
    def _row_to_account(row: tuple[str, str, str, int, int, int]) -> Account:
        return Account(
            account_id=row[0],
            tier=AccountTier(row[1]),
            subscription_state=SubscriptionState(row[2]),
            cost_limit=from_micros(row[3]),
            cost_used=from_micros(row[4]),
            cost_reserved=from_micros(row[5]),
        )

    def _read_reservation(
        self, conn: sqlite3.Connection, reservation_id: str
    ) -> Reservation | None:
        row = conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE reservation_id = ?",
            (reservation_id,),
        ).fetchone()
        return None if row is None else self._row_to_reservation(row)

    @staticmethod
    def _row_to_reservation(
        row: tuple[str, str, str, int, str, str, str | None],
    ) -> Reservation:
        return Reservation(
            reservation_id=row[0],
            account_id=row[1],
            related_message_id=row[2],
            estimated_cost=from_micros(row[3]),
            status=ReservationStatus(row[4]),
            created_at=parse_timestamp(row[5]),
            settled_at=parse_timestamp(row[6]) if row[6] is not None else None,
        )

    @staticmethod
    def _return_hold(
        conn: sqlite3.Connection,
        reservation: Reservation,
        status: ReservationStatus,
        now: str,
    ) -> None:
        conn.execute(
            "UPDATE reservations SET status = ?, settled_at = ? WHERE reservation_id = ?",
            (status.value, now, reservation.reservation_id),
        )
        conn.execute(
            "UPDATE accounts SET cost_reserved_micros = cost_reserved_micros - ?, "
            "updated_at = ? WHERE account_id = ?",
            (to_micros(reservation.estimated_cost), now, reservation.account_id),
        )
