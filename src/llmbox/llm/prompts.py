"""Prompt templates for the email reply completion.

The system prompt is fixed; only the user content varies per message.
"""

from llmbox.email.models import InboundMessage

SYSTEM_PROMPT = """\
You are a helpful assistant that users access via email.
Respond professionally and concisely.
If you feel the need to add a parting salutation to the text, sign off as LLMBox.
Never add [Your Name] or [Your Company] in the signature."""

USER_CONTENT_TEMPLATE = """\
Respond to this email:

From: {sender}
Subject: {subject}

{body}"""


def format_user_content(message: InboundMessage, body: str | None = None) -> str:
    """Render the user turn for *message*.

    Args:
        message: The inbound message being answered.
        body: Body to send instead of ``message.body_text`` (for example the
            latest reply with quoted history removed).

    Returns:
        The user content string passed to the completion service.
    """
    return USER_CONTENT_TEMPLATE.format(
        sender=message.sender_address,
        subject=message.subject,
        body=message.body_text if body is None else body,
    )
