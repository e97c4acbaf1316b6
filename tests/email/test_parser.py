"""Tests for inbound-parse payload validation and reply text extraction."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from llmbox.domain.errors import InboundValidationError
from llmbox.email.parser import (
    ParseErr,
    ParseOk,
    extract_address,
    extract_latest_reply,
    parse_inbound,
    strip_html,
)

# ---------------------------------------------------------------------------
# parse_inbound tests
# ---------------------------------------------------------------------------


class TestParseInbound:
    """Tests for parse_inbound."""

    def test_valid_form(self, sample_form: dict[str, str]) -> None:
        result = parse_inbound(sample_form)

        assert isinstance(result, ParseOk)
        message = result.message
        assert message.sender_address == "Jane@Example.com"
        assert message.recipient_address == "assistant@llmbox.pro"
        assert message.subject == "Weekend plans"
        assert message.message_id == "<reply-2@mail.example.com>"
        assert message.in_reply_to == "<reply-1@llmbox.pro>"
        assert message.references_chain == (
            "<orig-1@mail.example.com>",
            "<reply-1@llmbox.pro>",
        )

    def test_missing_fields_reported(self, sample_form: dict[str, str]) -> None:
        form = {k: v for k, v in sample_form.items() if k not in ("from", "subject")}

        result = parse_inbound(form)

        assert isinstance(result, ParseErr)
        assert result.error == "Missing required email fields"
        assert result.missing_fields == ("from", "subject")
        assert set(result.available_fields) == {"to", "text", "headers"}

    def test_missing_body_reported(self, sample_form: dict[str, str]) -> None:
        form = {**sample_form, "text": "   "}

        result = parse_inbound(form)

        assert isinstance(result, ParseErr)
        assert result.missing_fields == ("text",)

    def test_html_fallback(self, sample_form: dict[str, str]) -> None:
        form = {**sample_form, "text": "", "html": "<p>Hello <b>there</b></p>"}

        result = parse_inbound(form)

        assert isinstance(result, ParseOk)
        assert result.message.body_text == "Hello there"

    def test_file_upload_fields_are_ignored(self, sample_form: dict[str, str]) -> None:
        form: dict[str, object] = {**sample_form, "subject": object()}

        result = parse_inbound(form)

        assert isinstance(result, ParseErr)
        assert result.missing_fields == ("subject",)

    def test_missing_message_id_is_generated(self, sample_form: dict[str, str]) -> None:
        form = {**sample_form, "headers": "Subject: Weekend plans\n"}

        with capture_logs() as logs:
            result = parse_inbound(form)

        assert isinstance(result, ParseOk)
        assert result.message.message_id.startswith("<")
        assert result.message.message_id.endswith("@llmbox.pro>")
        assert result.message.in_reply_to is None
        assert result.message.references_chain == ()
        assert logs[0]["event"] == "message_id_missing"

    def test_generated_message_id_is_stable_per_form(self, sample_form: dict[str, str]) -> None:
        form = {**sample_form, "headers": "Subject: Weekend plans\n"}
        other = {**form, "text": "A different question entirely"}

        first = parse_inbound(form)
        again = parse_inbound(dict(form))
        different = parse_inbound(other)

        assert isinstance(first, ParseOk)
        assert isinstance(again, ParseOk)
        assert isinstance(different, ParseOk)
        assert first.message.message_id == again.message.message_id
        assert first.message.message_id != different.message.message_id

    def test_unwrap_raises_validation_error_with_context(self) -> None:
        result = parse_inbound({"from": "jane@example.com", "text": "hi"})

        with pytest.raises(InboundValidationError) as exc_info:
            result.unwrap()

        assert str(exc_info.value) == "Missing required email fields"
        assert exc_info.value.context == {
            "missing_fields": ["to", "subject", "headers"],
            "available_fields": ["from", "text"],
        }

    def test_never_raises_on_garbage(self) -> None:
        result = parse_inbound({"headers": "\x00\x01 not headers at all"})

        assert isinstance(result, ParseErr)


class TestHelpers:
    """Small parsing helpers."""

    def test_extract_address(self) -> None:
        assert extract_address('"Jane" <jane@example.com>') == "jane@example.com"
        assert extract_address("plain@example.com") == "plain@example.com"

    def test_strip_html(self) -> None:
        assert strip_html("<div>a<br/>b</div>") == "ab"


# ---------------------------------------------------------------------------
# extract_latest_reply tests
# ---------------------------------------------------------------------------


class TestExtractLatestReply:
    """Tests for extract_latest_reply."""

    def test_strips_quoted_history(self) -> None:
        body = (
            "Sounds good, thanks!\n\n"
            "On Mon, Jan 13, 2025 at 9:00 AM LLMBox <assistant@llmbox.pro> wrote:\n"
            "> Here are three ideas.\n"
        )

        latest = extract_latest_reply(body)

        assert "Sounds good, thanks!" in latest
        assert "Here are three ideas." not in latest

    def test_plain_message_unchanged(self) -> None:
        body = "Can you suggest three things to do in Lisbon?"

        assert extract_latest_reply(body).strip() == body

