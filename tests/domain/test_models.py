"""Tests for Pydantic domain models: Account, UsageEvent, Acknowledgment."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from llmbox.domain.models import Account, Acknowledgment, AdmissionResult, UsageEvent
from llmbox.domain.types import (
    AccountTier,
    AckStatus,
    AdmissionOutcome,
    PipelineState,
    SubscriptionState,
)


def _account(**overrides) -> Account:
    fields = {
        "account_id": "jane@example.com",
        "tier": AccountTier.FREE,
        "cost_limit": Decimal("1.00"),
        "cost_used": Decimal("0.25"),
        "cost_reserved": Decimal("0.10"),
        "subscription_state": SubscriptionState.FREE,
    }
    fields.update(overrides)
    return Account(**fields)


class TestAccount:
    """Tests for the Account model."""

    def test_remaining_budget_subtracts_reservations(self):
        assert _account().remaining_budget == Decimal("0.65")

    def test_usage_ratio(self):
        assert _account().usage_ratio == 0.25

    def test_zero_limit_is_fully_used(self):
        assert _account(cost_limit=Decimal("0")).usage_ratio == 1.0

    def test_string_inputs_coerced(self):
        """Pydantic should coerce string inputs to Decimal."""
        assert _account(cost_used="0.5").cost_used == Decimal("0.5")

    def test_rejects_float_cost(self):
        with pytest.raises(ValidationError, match="Use Decimal or string, not float"):
            _account(cost_used=0.5)

    def test_is_frozen(self):
        account = _account()
        with pytest.raises(ValidationError):
            account.cost_used = Decimal("0")  # type: ignore[misc]


class TestUsageEvent:
    def test_units_consumed(self):
        event = UsageEvent(
            account_id="jane@example.com",
            related_message_id="<m1@x>",
            input_tokens=900,
            output_tokens=1200,
            model="claude-sonnet-4-5",
            cost_computed=Decimal("0.0207"),
            created_at=datetime(2025, 1, 15, tzinfo=UTC),
        )

        assert event.units_consumed == {"input_tokens": 900, "output_tokens": 1200}

    def test_rejects_float_cost(self):
        with pytest.raises(ValidationError, match="Use Decimal or string, not float"):
            UsageEvent(
                account_id="jane@example.com",
                related_message_id="<m1@x>",
                input_tokens=1,
                output_tokens=1,
                model="m",
                cost_computed=0.01,
                created_at=datetime(2025, 1, 15, tzinfo=UTC),
            )


class TestAdmissionResultAndAck:
    def test_admitted_flag(self):
        result = AdmissionResult(
            outcome=AdmissionOutcome.ADMITTED, account=_account(), reservation_id="r1"
        )
        assert result.admitted

    def test_ack_is_always_http_200(self):
        ack = Acknowledgment(
            status=AckStatus.ERROR,
            message_id="<m1@x>",
            final_state=PipelineState.ACKNOWLEDGED,
        )
        assert ack.http_status == 200
