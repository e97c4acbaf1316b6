"""Shared pytest fixtures for the LLMBox email webhook test suite."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from llmbox.email.models import InboundMessage
from llmbox.store.schema import Database, open_database


class FakeClock:
    """Settable UTC clock for time-windowed stores."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def anyio_backend() -> str:
    """Run anyio-marked tests on asyncio, the event loop the code is written against."""
    return "asyncio"


@pytest.fixture
def db() -> Iterator[Database]:
    """An in-memory pipeline database with every table created."""
    database = open_database(":memory:")
    yield database
    database.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_headers() -> str:
    """A raw header block as posted by SendGrid Inbound Parse."""
    return (
        "Received: by mx.sendgrid.net\n"
        "Message-ID: <reply-2@mail.example.com>\n"
        "In-Reply-To: <reply-1@llmbox.pro>\n"
        "References: <orig-1@mail.example.com>\n"
        " <reply-1@llmbox.pro>\n"
        "Subject: Weekend plans\n"
    )


@pytest.fixture
def sample_form(sample_headers: str) -> dict[str, str]:
    """A valid inbound-parse form."""
    return {
        "from": '"Jane Sender" <Jane@Example.com>',
        "to": "assistant@llmbox.pro",
        "subject": "Weekend plans",
        "text": "Can you suggest three things to do in Lisbon this weekend?",
        "headers": sample_headers,
    }


@pytest.fixture
def sample_message() -> InboundMessage:
    """A parsed inbound message that continues an existing thread."""
    return InboundMessage(
        sender_address="jane@example.com",
        recipient_address="assistant@llmbox.pro",
        subject="Weekend plans",
        body_text="Can you suggest three things to do in Lisbon this weekend?",
        message_id="<reply-2@mail.example.com>",
        in_reply_to="<reply-1@llmbox.pro>",
        references_chain=("<orig-1@mail.example.com>", "<reply-1@llmbox.pro>"),
    )


@pytest.fixture
def free_limit() -> Decimal:
    return Decimal("1.00")
