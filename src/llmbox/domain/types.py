"""Domain enumerations for the inbound reply pipeline."""

from enum import StrEnum


class SubscriptionState(StrEnum):
    """Billing state of an account.  Written only by the billing collaborator."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    FREE = "free"


class AccountTier(StrEnum):
    """Pricing tier of an account."""

    FREE = "free"
    PAID = "paid"


class AdmissionOutcome(StrEnum):
    """Result of an admission-control check."""

    ADMITTED = "admitted"
    REJECTED = "rejected"


class RejectionReason(StrEnum):
    """Why admission control turned a request away."""

    QUOTA_EXCEEDED = "quota_exceeded"
    PAST_DUE = "past_due"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


class ReservationStatus(StrEnum):
    """Lifecycle of a quota hold.  Only ``pending`` counts toward ``cost_reserved``."""

    PENDING = "pending"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


class IdempotencyDecision(StrEnum):
    """Outcome of an idempotency check on an inbound message id."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class DeliveryOutcome(StrEnum):
    """Outcome of a single delivery attempt."""

    SENT = "sent"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class PipelineState(StrEnum):
    """States of a single pipeline run.  Strictly forward-progressing."""

    RECEIVED = "received"
    DEDUPLICATED = "deduplicated"
    ADMITTED = "admitted"
    REJECTED = "rejected"
    COMPLETING = "completing"
    METERED = "metered"
    COMPOSED = "composed"
    DELIVERING = "delivering"
    ACKNOWLEDGED = "acknowledged"


class AckStatus(StrEnum):
    """Status reported back to the inbound transport."""

    SUCCESS = "success"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    INVALID = "invalid"
    ERROR = "error"


# Subscription states that may be admitted (subject to quota).
ADMISSIBLE_STATES: frozenset[SubscriptionState] = frozenset(
    {SubscriptionState.ACTIVE, SubscriptionState.FREE}
)
