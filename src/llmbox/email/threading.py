"""Reply threading: Message-ID normalization and reply header construction.

Provides helpers for:
- Normalizing RFC 2822 message ids to the ``<id>`` form
- Prefixing reply subjects with ``Re: `` exactly once
- Building the outbound reply so mail clients thread it under the original
"""

from __future__ import annotations

import re

from llmbox.email.models import InboundMessage, OutboundMessage

_REPLY_PREFIX = re.compile(r"^\s*re\s*:", re.IGNORECASE)


def normalize_message_id(value: str | None) -> str:
    """Return *value* wrapped in exactly one pair of angle brackets.

    Surrounding whitespace and any existing brackets are stripped first, so
    ``"abc"``, ``"<abc>"`` and ``" <<abc>> "`` all become ``"<abc>"``.
    Empty or whitespace-only input returns ``""``.
    """
    if not value:
        return ""
    core = value.strip().strip("<>").strip()
    if not core:
        return ""
    return f"<{core}>"


def split_references(value: str | None) -> tuple[str, ...]:
    """Split a ``References`` header on whitespace into normalized ids."""
    if not value:
        return ()
    normalized = (normalize_message_id(token) for token in value.split())
    return tuple(token for token in normalized if token)


def reply_subject(subject: str) -> str:
    """Prefix *subject* with ``Re: `` unless it already carries a reply prefix."""
    if _REPLY_PREFIX.match(subject):
        return subject
    return f"Re: {subject}"


class ThreadComposer:
    """Build threaded replies to inbound messages.

    Args:
        from_address: Address replies are sent from.  When ``None`` the reply
            is sent from the address the inbound message was sent to.
    """

    def __init__(self, from_address: str | None = None) -> None:
        self._from_address = from_address or None

    def compose(self, inbound: InboundMessage, reply_body: str) -> OutboundMessage:
        """Construct the reply to *inbound* carrying *reply_body*.

        ``In-Reply-To`` is the inbound message id.  ``References`` is the
        inbound references chain followed by the inbound message id, with
        empty entries dropped.

        Args:
            inbound: The message being answered.
            reply_body: Plain-text body of the reply.

        Returns:
            An ``OutboundMessage`` addressed back to the inbound sender.
        """
        message_id = normalize_message_id(inbound.message_id)
        chain = [normalize_message_id(ref) for ref in inbound.references_chain]
        if message_id:
            chain.append(message_id)

        return OutboundMessage(
            from_address=self._from_address or inbound.recipient_address,
            to_address=inbound.sender_address,
            subject=reply_subject(inbound.subject),
            body_text=reply_body,
            in_reply_to=message_id or None,
            references_chain=tuple(ref for ref in chain if ref),
        )
