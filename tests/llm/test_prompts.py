"""Tests for completion prompt templates."""

from llmbox.email.models import InboundMessage
from llmbox.llm.prompts import SYSTEM_PROMPT, format_user_content


class TestPrompts:
    def test_system_prompt_forbids_placeholder_signature(self) -> None:
        assert "LLMBox" in SYSTEM_PROMPT
        assert "[Your Name]" in SYSTEM_PROMPT

    def test_user_content_includes_sender_subject_body(
        self, sample_message: InboundMessage
    ) -> None:
        content = format_user_content(sample_message)

        assert content.startswith("Respond to this email:")
        assert "From: jane@example.com" in content
        assert "Subject: Weekend plans" in content
        assert content.endswith(sample_message.body_text)

    def test_body_override(self, sample_message: InboundMessage) -> None:
        content = format_user_content(sample_message, "Just the latest reply.")

        assert content.endswith("Just the latest reply.")
        assert sample_message.body_text not in content
