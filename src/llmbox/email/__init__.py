"""Email domain: inbound parsing, reply threading, fallback bodies, and delivery."""

from llmbox.email.client import DeliveryClient, DeliveryHTTPError, classify_delivery_error
from llmbox.email.models import DeliveryAttempt, InboundMessage, OutboundMessage
from llmbox.email.parser import ParseErr, ParseOk, extract_latest_reply, parse_inbound
from llmbox.email.threading import ThreadComposer, normalize_message_id, reply_subject

__all__ = [
    "DeliveryAttempt",
    "DeliveryClient",
    "DeliveryHTTPError",
    "InboundMessage",
    "OutboundMessage",
    "ParseErr",
    "ParseOk",
    "ThreadComposer",
    "classify_delivery_error",
    "extract_latest_reply",
    "normalize_message_id",
    "parse_inbound",
    "reply_subject",
]
