"""Tests for the plain-text fallback reply bodies."""

from __future__ import annotations

from decimal import Decimal

import pytest

from llmbox.domain.errors import ErrorCategory
from llmbox.domain.models import Account
from llmbox.domain.types import AccountTier, RejectionReason, SubscriptionState
from llmbox.email.templates import (
    completion_error_body,
    fallback_body_for_completion_error,
    fallback_body_for_rejection,
    generic_error_body,
    rate_limit_body,
    timeout_body,
)

WEB_APP_URL = "https://llmbox.ai/"


@pytest.fixture
def account() -> Account:
    return Account(
        account_id="jane+test@example.com",
        tier=AccountTier.FREE,
        cost_limit=Decimal("1.00"),
        cost_used=Decimal("0.99"),
        subscription_state=SubscriptionState.FREE,
    )


class TestRejectionBodies:
    """Fallback bodies for admission rejections."""

    def test_quota_exceeded_includes_usage_and_upgrade_link(self, account: Account) -> None:
        body = fallback_body_for_rejection(RejectionReason.QUOTA_EXCEEDED, account, WEB_APP_URL)

        assert "usage limit" in body
        assert "$0.990000" in body
        assert "$1.000000" in body
        assert "https://llmbox.ai/pricing?email=jane%2Btest%40example.com" in body

    def test_past_due_links_billing(self, account: Account) -> None:
        body = fallback_body_for_rejection(RejectionReason.PAST_DUE, account, WEB_APP_URL)

        assert "payment" in body
        assert "https://llmbox.ai/billing?email=" in body

    def test_inactive_names_state(self, account: Account) -> None:
        canceled = account.model_copy(update={"subscription_state": SubscriptionState.CANCELED})

        body = fallback_body_for_rejection(
            RejectionReason.SUBSCRIPTION_INACTIVE, canceled, WEB_APP_URL
        )

        assert "Status: canceled" in body

    def test_unknown_reason_defaults_to_quota(self, account: Account) -> None:
        body = fallback_body_for_rejection(None, account, WEB_APP_URL)

        assert "/pricing?" in body


class TestCompletionErrorBodies:
    """Fallback bodies for failed completion calls."""

    @pytest.mark.parametrize(
        ("category", "expected"),
        [
            (ErrorCategory.RATE_LIMIT, rate_limit_body()),
            (ErrorCategory.TIMEOUT, timeout_body()),
            (ErrorCategory.SERVER, completion_error_body()),
            (ErrorCategory.NETWORK, completion_error_body()),
            (ErrorCategory.AUTH, generic_error_body()),
            (ErrorCategory.UNKNOWN, generic_error_body()),
        ],
    )
    def test_body_by_category(self, category: ErrorCategory, expected: str) -> None:
        assert fallback_body_for_completion_error(category) == expected

    def test_bodies_never_leak_internals(self) -> None:
        for body in (generic_error_body(), completion_error_body()):
            assert "Traceback" not in body
            assert "Exception" not in body
            assert body.endswith("Email Assistant Service")
