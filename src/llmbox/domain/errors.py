"""Domain-specific exception classes for the reply pipeline."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from llmbox.domain.types import PipelineState


class ErrorClass(StrEnum):
    """Retry classification assigned to a failed external call."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


class ErrorCategory(StrEnum):
    """Typed failure categories surfaced by the external collaborators."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    MALFORMED = "malformed"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


class LLMBoxError(Exception):
    """Base class for all domain errors in the reply pipeline."""


class InboundValidationError(LLMBoxError):
    """Raised when an inbound webhook payload is missing required fields.

    Attributes:
        context: Structured details (missing and available field names).
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.context = context or {}
        super().__init__(message)


class ExternalServiceError(LLMBoxError):
    """A terminal failure from the completion or delivery service.

    Attributes:
        service: Name of the collaborator (``"completion"`` or ``"delivery"``).
        category: The typed failure category.
        status_code: HTTP status of the last failure, if any.
    """

    def __init__(
        self,
        service: str,
        category: ErrorCategory,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.service = service
        self.category = category
        self.status_code = status_code
        super().__init__(f"{service} failed ({category}): {message}")


class CompletionError(ExternalServiceError):
    """Raised when the completion service cannot produce a reply."""

    def __init__(
        self, category: ErrorCategory, message: str, status_code: int | None = None
    ) -> None:
        super().__init__("completion", category, message, status_code)


class DeliveryError(ExternalServiceError):
    """Raised when an outbound message could not be delivered.

    Attributes:
        attempts: The ``DeliveryAttempt`` records made before giving up.
    """

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        status_code: int | None = None,
        attempts: list[Any] | None = None,
    ) -> None:
        self.attempts = list(attempts or [])
        super().__init__("delivery", category, message, status_code)


class AttemptTimeoutError(LLMBoxError):
    """Raised when a single attempt of an external call exceeds its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} attempt timed out after {timeout:.2f}s")


class RetryExhaustedError(LLMBoxError):
    """Raised when every allowed attempt failed with a retryable error.

    Attributes:
        operation: Name of the wrapped operation.
        attempts: Number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


class DeadlineExceededError(LLMBoxError):
    """Raised when a call is started after its overall deadline has passed."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Deadline for '{operation}' already passed")


class InvalidTransitionError(LLMBoxError):
    """Raised when a pipeline run attempts a non-forward state change.

    Attributes:
        current_state: The state the run was in.
        target: The rejected target state.
    """

    def __init__(self, current_state: PipelineState, target: PipelineState) -> None:
        self.current_state = current_state
        self.target = target
        super().__init__(f"Cannot move pipeline from '{current_state}' to '{target}'")


class UnknownReservationError(LLMBoxError):
    """Raised when committing a reservation that is missing or already settled."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"No pending reservation '{reservation_id}'")
