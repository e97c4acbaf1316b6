"""SendGrid delivery client for outbound replies.

Provides the ``DeliveryClient`` class that sends an ``OutboundMessage``
through the SendGrid v3 ``mail/send`` endpoint with retries, records every
attempt, and surfaces terminal failures as a typed ``DeliveryError``.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from llmbox.domain.errors import (
    AttemptTimeoutError,
    DeadlineExceededError,
    DeliveryError,
    ErrorCategory,
    ErrorClass,
    LLMBoxError,
    RetryExhaustedError,
)
from llmbox.domain.types import DeliveryOutcome
from llmbox.email.models import DeliveryAttempt, OutboundMessage
from llmbox.observability.metrics import DELIVERY_ATTEMPTS
from llmbox.resilience.retry import DEFAULT_POLICY, RetryPolicy, execute

if TYPE_CHECKING:
    from llmbox.store.deliveries import DeliveryLog

logger = structlog.get_logger()

SENDGRID_BASE_URL = "https://api.sendgrid.com"
SEND_PATH = "/v3/mail/send"

_RETRYABLE_STATUS = frozenset({408, 429})
_AUTH_STATUS = frozenset({401, 403})


class DeliveryHTTPError(LLMBoxError):
    """Raised for a non-2xx response from the delivery service."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Delivery service returned HTTP {status_code}: {body[:200]}")


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError | AttemptTimeoutError):
        return True
    if isinstance(exc, DeliveryHTTPError):
        return exc.status_code in _RETRYABLE_STATUS or exc.status_code >= 500
    return False


def classify_delivery_error(exc: BaseException) -> ErrorClass:
    """Transport failures, 408, 429 and 5xx are retryable; everything else is fatal."""
    if _is_transient(exc):
        return ErrorClass.RETRYABLE
    if isinstance(exc, DeliveryHTTPError) and exc.status_code in _AUTH_STATUS:
        logger.critical("delivery_auth_error", status_code=exc.status_code, error=exc.body[:200])
    return ErrorClass.FATAL


def categorize_delivery_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, RetryExhaustedError) and exc.last_error is not None:
        return categorize_delivery_error(exc.last_error)
    if isinstance(exc, AttemptTimeoutError | DeadlineExceededError | httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK
    if isinstance(exc, DeliveryHTTPError):
        status = exc.status_code
        if status in _AUTH_STATUS:
            return ErrorCategory.AUTH
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status == 408:
            return ErrorCategory.TIMEOUT
        if status >= 500:
            return ErrorCategory.SERVER
        return ErrorCategory.MALFORMED
    return ErrorCategory.UNKNOWN


class DeliveryClient:
    """Send outbound replies through SendGrid.

    All HTTP traffic goes through the provided ``httpx.AsyncClient``; the
    caller owns its lifecycle.

    Args:
        http: Shared async HTTP client.
        api_key: SendGrid API key.
        policy: Retry policy applied to each send.
        base_url: SendGrid API base URL.
        delivery_log: Optional log that persists every attempt.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        *,
        policy: RetryPolicy = DEFAULT_POLICY,
        base_url: str = SENDGRID_BASE_URL,
        delivery_log: DeliveryLog | None = None,
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._policy = policy
        self._url = base_url.rstrip("/") + SEND_PATH
        self._delivery_log = delivery_log

    @staticmethod
    def build_payload(outbound: OutboundMessage) -> dict[str, Any]:
        """Build the SendGrid v3 JSON body for *outbound*.

        Threading headers are included only when non-empty.
        """
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": outbound.to_address}]}],
            "from": {"email": outbound.from_address},
            "subject": outbound.subject,
            "content": [{"type": "text/plain", "value": outbound.body_text}],
        }
        headers = outbound.threading_headers()
        if headers:
            payload["headers"] = headers
        return payload

    async def deliver(
        self,
        outbound: OutboundMessage,
        *,
        deadline: float | None = None,
        related_message_id: str = "",
    ) -> DeliveryAttempt:
        """Send *outbound*, retrying transient failures.

        Every attempt shares one ``outbound_id`` and is recorded in the
        delivery log (when configured) and the ``DELIVERY_ATTEMPTS`` metric.

        Args:
            outbound: The reply to send.
            deadline: Absolute event-loop time after which no attempt starts.
            related_message_id: Inbound message id the attempts are logged under.

        Returns:
            The final, successful ``DeliveryAttempt``.

        Raises:
            DeliveryError: The send failed fatally or exhausted its retries.
                ``attempts`` holds every recorded attempt.
        """
        outbound_id = uuid.uuid4().hex
        payload = self.build_payload(outbound)
        attempts: list[DeliveryAttempt] = []

        def _record(attempt_number: int, error: BaseException | None, latency_ms: float) -> None:
            if error is None:
                outcome = DeliveryOutcome.SENT
            elif _is_transient(error):
                outcome = DeliveryOutcome.RETRYABLE_FAILURE
            else:
                outcome = DeliveryOutcome.FATAL_FAILURE
            attempt = DeliveryAttempt(
                outbound_id=outbound_id,
                attempt_number=attempt_number,
                outcome=outcome,
                latency_ms=latency_ms,
                status_code=error.status_code if isinstance(error, DeliveryHTTPError) else None,
            )
            attempts.append(attempt)
            DELIVERY_ATTEMPTS.labels(outcome=outcome.value).inc()
            if self._delivery_log is None:
                return
            try:
                self._delivery_log.record(attempt, related_message_id)
            except sqlite3.Error:
                logger.exception(
                    "delivery_attempt_log_failed",
                    outbound_id=outbound_id,
                    attempt_number=attempt_number,
                    outcome=outcome,
                )

        async def _send() -> httpx.Response:
            response = await self._http.post(
                self._url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            if not response.is_success:
                raise DeliveryHTTPError(response.status_code, response.text)
            return response

        try:
            await execute(
                _send,
                classify_delivery_error,
                self._policy,
                operation_name="email_send",
                deadline=deadline,
                on_attempt=_record,
            )
        except (
            RetryExhaustedError,
            DeadlineExceededError,
            DeliveryHTTPError,
            httpx.HTTPError,
        ) as exc:
            category = categorize_delivery_error(exc)
            status_code = attempts[-1].status_code if attempts else None
            logger.error(
                "delivery_failed",
                to=outbound.to_address,
                outbound_id=outbound_id,
                category=category,
                attempts=len(attempts),
                error=str(exc),
            )
            raise DeliveryError(category, str(exc), status_code, attempts) from exc

        logger.info(
            "delivery_succeeded",
            to=outbound.to_address,
            outbound_id=outbound_id,
            attempts=len(attempts),
            latency_ms=attempts[-1].latency_ms,
        )
        return attempts[-1]
