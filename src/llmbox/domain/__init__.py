"""Domain types, models, and errors for the inbound reply pipeline."""

from llmbox.domain.errors import (
    AttemptTimeoutError,
    CompletionError,
    DeadlineExceededError,
    DeliveryError,
    ErrorCategory,
    ErrorClass,
    ExternalServiceError,
    InboundValidationError,
    InvalidTransitionError,
    LLMBoxError,
    RetryExhaustedError,
    UnknownReservationError,
)
from llmbox.domain.models import (
    Account,
    Acknowledgment,
    AdmissionResult,
    IdempotencyRecord,
    Reservation,
    UsageEvent,
)
from llmbox.domain.types import (
    ADMISSIBLE_STATES,
    AccountTier,
    AckStatus,
    AdmissionOutcome,
    DeliveryOutcome,
    IdempotencyDecision,
    PipelineState,
    RejectionReason,
    ReservationStatus,
    SubscriptionState,
)

__all__ = [
    "ADMISSIBLE_STATES",
    "Account",
    "AccountTier",
    "AckStatus",
    "Acknowledgment",
    "AdmissionOutcome",
    "AdmissionResult",
    "AttemptTimeoutError",
    "CompletionError",
    "DeadlineExceededError",
    "DeliveryError",
    "DeliveryOutcome",
    "ErrorCategory",
    "ErrorClass",
    "ExternalServiceError",
    "IdempotencyDecision",
    "IdempotencyRecord",
    "InboundValidationError",
    "InvalidTransitionError",
    "LLMBoxError",
    "PipelineState",
    "RejectionReason",
    "Reservation",
    "ReservationStatus",
    "RetryExhaustedError",
    "SubscriptionState",
    "UnknownReservationError",
    "UsageEvent",
]
