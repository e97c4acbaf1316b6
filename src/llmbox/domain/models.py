"""Pydantic v2 models for accounts, usage metering, and pipeline results.

Money fields are ``Decimal`` USD values.  The ledger stores them as integer
micro-USD; these models always carry the converted ``Decimal``.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator

from llmbox.domain.types import (
    AccountTier,
    AckStatus,
    AdmissionOutcome,
    PipelineState,
    RejectionReason,
    ReservationStatus,
    SubscriptionState,
)


class Account(BaseModel):
    """Snapshot of an account's quota state as read from the ledger."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    tier: AccountTier
    cost_limit: Decimal
    cost_used: Decimal
    cost_reserved: Decimal = Decimal("0")
    subscription_state: SubscriptionState

    @field_validator("cost_limit", "cost_used", "cost_reserved", mode="before")
    @classmethod
    def reject_float_inputs(cls, v: object) -> object:
        """Reject float inputs for monetary fields to prevent precision errors."""
        if isinstance(v, float):
            raise ValueError("Use Decimal or string, not float, for monetary values")
        return v

    @property
    def remaining_budget(self) -> Decimal:
        """Budget left after committed usage and outstanding reservations."""
        return self.cost_limit - self.cost_used - self.cost_reserved

    @property
    def usage_ratio(self) -> float:
        """Committed usage as a fraction of the limit (0.0 when the limit is 0)."""
        if self.cost_limit <= 0:
            return 1.0
        return float(self.cost_used / self.cost_limit)


class UsageEvent(BaseModel):
    """Append-only record of one metered completion call."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    related_message_id: str
    input_tokens: int
    output_tokens: int
    model: str
    cost_computed: Decimal
    created_at: datetime

    @field_validator("cost_computed", mode="before")
    @classmethod
    def reject_float_inputs(cls, v: object) -> object:
        if isinstance(v, float):
            raise ValueError("Use Decimal or string, not float, for monetary values")
        return v

    @property
    def units_consumed(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


class IdempotencyRecord(BaseModel):
    """First sighting of an inbound message id within the dedup window."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    first_seen_at: datetime
    expires_at: datetime


class Reservation(BaseModel):
    """A provisional quota hold created at admission time."""

    model_config = ConfigDict(frozen=True)

    reservation_id: str
    account_id: str
    related_message_id: str
    estimated_cost: Decimal
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: datetime
    settled_at: datetime | None = None


class AdmissionResult(BaseModel):
    """Outcome of ``UsageLedger.check_and_reserve``.

    ``reservation_id`` is set only when admitted; ``reason`` only when rejected.
    """

    model_config = ConfigDict(frozen=True)

    outcome: AdmissionOutcome
    account: Account
    reservation_id: str | None = None
    reason: RejectionReason | None = None
    detail: str = ""

    @property
    def admitted(self) -> bool:
        return self.outcome is AdmissionOutcome.ADMITTED


class Acknowledgment(BaseModel):
    """What the pipeline reports back to the inbound transport.

    ``http_status`` is 200 for every outcome so the transport never redelivers.
    """

    model_config = ConfigDict(frozen=True)

    status: AckStatus
    message_id: str
    final_state: PipelineState
    detail: str = ""
    http_status: int = 200
