"""Plain-text fallback reply bodies.

Sent when the pipeline cannot produce a generated reply: the completion
service failed, or admission control rejected the request.  Bodies never
include internal error details.
"""

from __future__ import annotations

from urllib.parse import quote

from llmbox.domain.errors import ErrorCategory
from llmbox.domain.models import Account
from llmbox.domain.types import RejectionReason
from llmbox.llm.pricing import format_cost

_SIGN_OFF = "Best regards,\nEmail Assistant Service"


def generic_error_body() -> str:
    return (
        "Dear User,\n\n"
        "Sorry, I encountered a technical issue. Please try again shortly.\n\n"
        "If this problem continues, please contact our support team.\n\n"
        f"{_SIGN_OFF}"
    )


def completion_error_body() -> str:
    return (
        "Dear User,\n\n"
        "Sorry, I'm having trouble responding right now. "
        "Please try again in a few minutes.\n\n"
        "If this issue persists, please reach out to our support team.\n\n"
        f"{_SIGN_OFF}"
    )


def rate_limit_body() -> str:
    return (
        "Dear User,\n\n"
        "I'm experiencing high demand right now. Please try again in a few minutes.\n\n"
        "Thank you for your patience!\n\n"
        f"{_SIGN_OFF}"
    )


def timeout_body() -> str:
    return (
        "Dear User,\n\n"
        "I'm taking longer than usual to respond. Please try again in a few minutes.\n\n"
        "Thank you for your patience!\n\n"
        f"{_SIGN_OFF}"
    )


def _account_url(web_app_url: str, page: str, account_id: str) -> str:
    return f"{web_app_url.rstrip('/')}/{page}?email={quote(account_id, safe='')}"


def quota_exceeded_body(account: Account, web_app_url: str) -> str:
    """Tell the sender their usage limit is reached, with usage and an upgrade link."""
    return (
        "Hi there,\n\n"
        "You've reached the usage limit for your LLMBox plan, so this message "
        "was not answered.\n\n"
        "YOUR USAGE:\n"
        f"- Total Cost: {format_cost(account.cost_used)}\n"
        f"- Limit: {format_cost(account.cost_limit)}\n"
        f"- Email: {account.account_id}\n\n"
        "To keep the conversation going, upgrade to one of our paid plans:\n"
        f"{_account_url(web_app_url, 'pricing', account.account_id)}\n\n"
        "Best,\nThe LLMBox Team"
    )


def past_due_body(account: Account, web_app_url: str) -> str:
    return (
        "Hi there,\n\n"
        "We couldn't process the latest payment for your LLMBox subscription, "
        "so this message was not answered.\n\n"
        "Please update your payment method to continue:\n"
        f"{_account_url(web_app_url, 'billing', account.account_id)}\n\n"
        "Best,\nThe LLMBox Team"
    )


def subscription_inactive_body(account: Account, web_app_url: str) -> str:
    return (
        "Hi there,\n\n"
        "Your LLMBox subscription is currently inactive.\n"
        f"Status: {account.subscription_state}\n\n"
        "To continue using LLMBox, please reactivate your subscription:\n"
        f"{_account_url(web_app_url, 'billing', account.account_id)}\n\n"
        "Best,\nThe LLMBox Team"
    )


def fallback_body_for_rejection(
    reason: RejectionReason | None, account: Account, web_app_url: str
) -> str:
    """Pick the fallback body explaining an admission rejection."""
    if reason is RejectionReason.PAST_DUE:
        return past_due_body(account, web_app_url)
    if reason is RejectionReason.SUBSCRIPTION_INACTIVE:
        return subscription_inactive_body(account, web_app_url)
    return quota_exceeded_body(account, web_app_url)


def fallback_body_for_completion_error(category: ErrorCategory) -> str:
    """Pick the fallback body for a failed completion call."""
    if category is ErrorCategory.RATE_LIMIT:
        return rate_limit_body()
    if category is ErrorCategory.TIMEOUT:
        return timeout_body()
    if category in (ErrorCategory.SERVER, ErrorCategory.NETWORK):
        return completion_error_body()
    return generic_error_body()
