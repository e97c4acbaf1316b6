"""Inbound-parse webhook payload validation and reply text extraction.

Provides helpers for:
- Validating a SendGrid Inbound Parse form into an ``InboundMessage``
  (``parse_inbound`` returns ``ParseOk`` or ``ParseErr``; it never raises)
- Extracting only the latest reply from a multi-message email thread
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from email.message import Message
from email.parser import HeaderParser
from email.utils import parseaddr
from typing import Any

import structlog
from mailparser_reply import EmailReplyParser  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict

from llmbox.domain.errors import InboundValidationError
from llmbox.email.models import InboundMessage
from llmbox.email.threading import normalize_message_id, split_references

logger = structlog.get_logger()

REQUIRED_FIELDS = ("from", "to", "subject", "headers")
FALLBACK_MESSAGE_ID_DOMAIN = "llmbox.pro"
_FALLBACK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, FALLBACK_MESSAGE_ID_DOMAIN)

# Fields hashed into a fallback Message-ID; a redelivery of the same post
# yields the same id.
_FALLBACK_ID_FIELDS = ("headers", "from", "to", "subject", "text", "html")

_TAG = re.compile(r"<[^>]+>")


class ParseOk(BaseModel):
    """A payload that passed validation."""

    model_config = ConfigDict(frozen=True)

    message: InboundMessage

    def unwrap(self) -> InboundMessage:
        return self.message


class ParseErr(BaseModel):
    """A payload that failed validation, with enough context to debug it."""

    model_config = ConfigDict(frozen=True)

    error: str
    missing_fields: tuple[str, ...] = ()
    available_fields: tuple[str, ...] = ()

    def unwrap(self) -> InboundMessage:
        """Raise the failure as an ``InboundValidationError``."""
        raise InboundValidationError(
            self.error,
            context={
                "missing_fields": list(self.missing_fields),
                "available_fields": list(self.available_fields),
            },
        )


def _field(form: Mapping[str, Any], name: str) -> str:
    """Return a text form field, or ``""`` for missing and non-text (file) fields."""
    value = form.get(name)
    if isinstance(value, str):
        return value
    return ""


def _header(headers: Message, name: str) -> str | None:
    value = headers.get(name)
    return None if value is None else str(value)


def extract_address(value: str) -> str:
    """Reduce ``"Display Name" <user@example.com>`` to ``user@example.com``."""
    _, address = parseaddr(value)
    return (address or value).strip()


def strip_html(html: str) -> str:
    return _TAG.sub("", html).strip()


def fallback_message_id(form: Mapping[str, Any]) -> str:
    """A stable ``<uuid@llmbox.pro>`` id for a form that carries no Message-ID."""
    source = "\x00".join(_field(form, name) for name in _FALLBACK_ID_FIELDS)
    return f"<{uuid.uuid5(_FALLBACK_NAMESPACE, source).hex}@{FALLBACK_MESSAGE_ID_DOMAIN}>"


def parse_inbound(form: Mapping[str, Any]) -> ParseOk | ParseErr:
    """Validate an inbound-parse form and build the ``InboundMessage``.

    The body is taken from ``text``, falling back to tag-stripped ``html``.
    Threading ids come from the raw ``headers`` block; folded headers are
    handled by ``email.parser.HeaderParser``.  A missing ``Message-ID`` is
    replaced with a generated one so the message can still be deduplicated
    and answered.  The fallback is derived from the posted fields, so a
    redelivery of the same form is still recognized as a duplicate.

    Args:
        form: The multipart form fields posted by the inbound transport.

    Returns:
        ``ParseOk`` with the message, or ``ParseErr`` naming the missing fields.
    """
    missing = [name for name in REQUIRED_FIELDS if not _field(form, name).strip()]

    body = _field(form, "text")
    if not body.strip():
        body = strip_html(_field(form, "html"))
    if not body.strip():
        missing.append("text")

    if missing:
        return ParseErr(
            error="Missing required email fields",
            missing_fields=tuple(missing),
            available_fields=tuple(form.keys()),
        )

    headers = HeaderParser().parsestr(_field(form, "headers"))
    message_id = normalize_message_id(_header(headers, "Message-ID"))
    if not message_id:
        message_id = fallback_message_id(form)
        logger.warning("message_id_missing", generated_message_id=message_id)

    message = InboundMessage(
        sender_address=extract_address(_field(form, "from")),
        recipient_address=extract_address(_field(form, "to")),
        subject=_field(form, "subject").strip(),
        body_text=body,
        message_id=message_id,
        in_reply_to=normalize_message_id(_header(headers, "In-Reply-To")) or None,
        references_chain=split_references(_header(headers, "References")),
    )
    return ParseOk(message=message)


def extract_latest_reply(full_body: str) -> str:
    """Extract only the latest reply text from an email thread body.

    Uses ``mail-parser-reply`` to strip quoted content, signature blocks,
    and forwarded message headers.  Falls back to ``full_body`` when the
    parser returns nothing (e.g. the whole message looked quoted).
    """
    parsed: str = EmailReplyParser(languages=["en"]).parse_reply(text=full_body)
    if not parsed or not parsed.strip():
        return full_body
    return parsed
