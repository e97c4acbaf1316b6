"""Tests for the SendGrid DeliveryClient using a mocked httpx.AsyncClient."""

from __future__ import annotations

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from structlog.testing import capture_logs

from llmbox.domain.errors import DeliveryError, ErrorCategory, ErrorClass
from llmbox.domain.types import DeliveryOutcome
from llmbox.email.client import (
    DeliveryClient,
    DeliveryHTTPError,
    categorize_delivery_error,
    classify_delivery_error,
)
from llmbox.email.models import OutboundMessage
from llmbox.resilience.retry import RetryPolicy
from llmbox.store.deliveries import DeliveryLog
from llmbox.store.schema import Database

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

API_KEY = "SG.test-key"
RELATED_ID = "<reply-2@mail.example.com>"


def _outbound(**overrides) -> OutboundMessage:
    fields = {
        "from_address": "assistant@llmbox.pro",
        "to_address": "jane@example.com",
        "subject": "Re: Weekend plans",
        "body_text": "Here are three ideas.",
        "in_reply_to": "<reply-2@mail.example.com>",
        "references_chain": ("<orig-1@mail.example.com>", "<reply-2@mail.example.com>"),
    }
    fields.update(overrides)
    return OutboundMessage(**fields)


def _make_http(*statuses: int) -> MagicMock:
    """Create a mock AsyncClient whose posts return *statuses* in order."""
    http = MagicMock()
    responses = [httpx.Response(status, text="" if status < 300 else "err") for status in statuses]
    http.post = AsyncMock(side_effect=responses)
    return http


def _make_client(http: MagicMock, delivery_log: DeliveryLog | None = None) -> DeliveryClient:
    return DeliveryClient(
        http,
        API_KEY,
        policy=RetryPolicy(base_delay=0.0),
        base_url="https://sendgrid.test/",
        delivery_log=delivery_log,
    )


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class TestBuildPayload:
    """Tests for DeliveryClient.build_payload."""

    def test_includes_threading_headers(self) -> None:
        payload = DeliveryClient.build_payload(_outbound())

        assert payload["personalizations"] == [{"to": [{"email": "jane@example.com"}]}]
        assert payload["from"] == {"email": "assistant@llmbox.pro"}
        assert payload["subject"] == "Re: Weekend plans"
        assert payload["content"] == [{"type": "text/plain", "value": "Here are three ideas."}]
        assert payload["headers"] == {
            "In-Reply-To": "<reply-2@mail.example.com>",
            "References": "<orig-1@mail.example.com> <reply-2@mail.example.com>",
        }

    def test_omits_empty_headers(self) -> None:
        payload = DeliveryClient.build_payload(_outbound(in_reply_to=None, references_chain=()))

        assert "headers" not in payload


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_retryable_statuses(self, status: int) -> None:
        assert classify_delivery_error(DeliveryHTTPError(status)) is ErrorClass.RETRYABLE

    @pytest.mark.parametrize("status", [400, 401, 403, 413])
    def test_fatal_statuses(self, status: int) -> None:
        assert classify_delivery_error(DeliveryHTTPError(status)) is ErrorClass.FATAL

    def test_transport_error_is_retryable(self) -> None:
        assert classify_delivery_error(httpx.ConnectError("refused")) is ErrorClass.RETRYABLE

    def test_categories(self) -> None:
        assert categorize_delivery_error(DeliveryHTTPError(401)) is ErrorCategory.AUTH
        assert categorize_delivery_error(DeliveryHTTPError(400)) is ErrorCategory.MALFORMED
        assert categorize_delivery_error(httpx.ReadTimeout("slow")) is ErrorCategory.TIMEOUT
        assert categorize_delivery_error(httpx.ConnectError("x")) is ErrorCategory.NETWORK


# ---------------------------------------------------------------------------
# DeliveryClient.deliver
# ---------------------------------------------------------------------------


class TestDeliver:
    """Tests for DeliveryClient.deliver."""

    @pytest.mark.anyio()
    async def test_success_first_attempt(self) -> None:
        http = _make_http(202)

        attempt = await _make_client(http).deliver(_outbound())

        assert attempt.outcome is DeliveryOutcome.SENT
        assert attempt.attempt_number == 1
        args, kwargs = http.post.call_args
        assert args[0] == "https://sendgrid.test/v3/mail/send"
        assert kwargs["headers"] == {"Authorization": f"Bearer {API_KEY}"}
        assert kwargs["json"]["subject"] == "Re: Weekend plans"

    @pytest.mark.anyio()
    async def test_retries_share_outbound_id(self, db: Database) -> None:
        log = DeliveryLog(db)
        http = _make_http(503, 429, 202)

        attempt = await _make_client(http, log).deliver(
            _outbound(), related_message_id=RELATED_ID
        )

        assert attempt.attempt_number == 3
        recorded = log.attempts_for(RELATED_ID)
        assert [a.outcome for a in recorded] == [
            DeliveryOutcome.RETRYABLE_FAILURE,
            DeliveryOutcome.RETRYABLE_FAILURE,
            DeliveryOutcome.SENT,
        ]
        assert [a.status_code for a in recorded] == [503, 429, None]
        assert log.sequences_for(RELATED_ID) == {attempt.outbound_id}

    @pytest.mark.anyio()
    async def test_sent_reply_survives_attempt_log_failure(self) -> None:
        log = MagicMock(spec=DeliveryLog)
        log.record.side_effect = sqlite3.OperationalError("database is locked")
        http = _make_http(202)

        with capture_logs() as logs:
            attempt = await _make_client(http, log).deliver(
                _outbound(), related_message_id=RELATED_ID
            )

        assert attempt.outcome is DeliveryOutcome.SENT
        assert http.post.await_count == 1
        assert "delivery_attempt_log_failed" in [entry["event"] for entry in logs]

    @pytest.mark.anyio()
    async def test_exhaustion_raises_delivery_error(self) -> None:
        http = _make_http(500, 500, 500)

        with pytest.raises(DeliveryError) as exc_info:
            await _make_client(http).deliver(_outbound())

        error = exc_info.value
        assert error.category is ErrorCategory.SERVER
        assert error.status_code == 500
        assert len(error.attempts) == 3
        assert http.post.await_count == 3

    @pytest.mark.anyio()
    async def test_fatal_status_not_retried(self) -> None:
        http = _make_http(400)

        with pytest.raises(DeliveryError) as exc_info:
            await _make_client(http).deliver(_outbound())

        assert exc_info.value.category is ErrorCategory.MALFORMED
        assert exc_info.value.attempts[0].outcome is DeliveryOutcome.FATAL_FAILURE
        assert http.post.await_count == 1

    @pytest.mark.anyio()
    async def test_transport_errors_retried(self) -> None:
        http = MagicMock()
        http.post = AsyncMock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(202)]
        )

        attempt = await _make_client(http).deliver(_outbound())

        assert attempt.attempt_number == 2
