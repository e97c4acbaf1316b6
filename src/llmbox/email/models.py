"""Pydantic v2 models for the email domain.

Provides frozen (immutable) models for the inbound message handed over by the
inbound-parse webhook, the threaded outbound reply, and the record of each
delivery attempt.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from llmbox.domain.types import DeliveryOutcome


class InboundMessage(BaseModel):
    """An email received through the inbound-parse webhook.

    ``message_id`` is normalized to ``<...>`` form.  ``references_chain``
    holds the normalized ``References`` ids in their original order.
    """

    model_config = ConfigDict(frozen=True)

    sender_address: str
    recipient_address: str
    subject: str
    body_text: str
    message_id: str  # RFC 2822 Message-ID header
    in_reply_to: str | None = None
    references_chain: tuple[str, ...] = ()
    received_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class OutboundMessage(BaseModel):
    """A reply to be handed to the delivery service.

    When ``in_reply_to`` and ``references_chain`` are set, mail clients
    display the reply in the sender's original conversation.
    """

    model_config = ConfigDict(frozen=True)

    from_address: str
    to_address: str
    subject: str
    body_text: str
    in_reply_to: str | None = None
    references_chain: tuple[str, ...] = ()

    def threading_headers(self) -> dict[str, str]:
        """``In-Reply-To`` and ``References`` headers, omitting empty ones."""
        headers: dict[str, str] = {}
        if self.in_reply_to:
            headers["In-Reply-To"] = self.in_reply_to
        if self.references_chain:
            headers["References"] = " ".join(self.references_chain)
        return headers


class DeliveryAttempt(BaseModel):
    """One attempt to send an outbound message.

    All attempts for the same logical message share ``outbound_id``.
    """

    model_config = ConfigDict(frozen=True)

    outbound_id: str
    attempt_number: int
    outcome: DeliveryOutcome
    latency_ms: float
    status_code: int | None = None
