"""
Tests for the billing and event models.

Validates model defaults, field constraints, and enum values.
"""

import pytest
from pydantic import ValidationError

from tests.helpers import T0, checkout_session, invoice, subscription, verified
from toolspace_billing.models.billing import (
    PAID_PLANS,
    BillingEvent,
    BillingProfile,
    PlanId,
    SubscriptionStatus,
    UsageRecord,
)
from toolspace_billing.models.events import EventCategory, categorize


class TestPlanId:
    def test_plan_values(self):
        assert {p.value for p in PlanId} == {"free", "pro", "pro_plus"}

    def test_paid_plans_exclude_free(self):
        assert PlanId.FREE not in PAID_PLANS
        assert PAID_PLANS == {PlanId.PRO, PlanId.PRO_PLUS}


class TestBillingProfile:
    def test_free_defaults(self):
        profile = BillingProfile.free("user-1", T0)

        assert profile.plan_id == PlanId.FREE
        assert profile.status == SubscriptionStatus.FREE
        assert profile.external_customer_id is None
        assert profile.current_period_end is None
        assert profile.period_is_provisional is False
        assert profile.cancel_at_period_end is False
        assert profile.created_at == profile.updated_at == T0

    def test_rejects_unknown_plan(self):
        with pytest.raises(ValidationError):
            BillingProfile(user_id="u", plan_id="gold", created_at=T0, updated_at=T0)


class TestUsageRecord:
    def test_empty_record(self):
        record = UsageRecord.empty("2026-02-22")

        assert record.date == "2026-02-22"
        assert record.heavy_ops == record.light_ops == 0
        assert record.bytes_processed == 0

    def test_date_must_be_day_key(self):
        with pytest.raises(ValidationError):
            UsageRecord(date="22/02/2026")

    def test_counters_are_non_negative(self):
        with pytest.raises(ValidationError):
            UsageRecord(date="2026-02-22", heavy_ops=-1)


class TestBillingEvent:
    def test_defaults(self):
        event = BillingEvent(event_id="evt_1", type="invoice.paid", timestamp=1)

        assert event.processed is False
        assert event.error is None
        assert event.metadata == {}


class TestEventCategory:
    @pytest.mark.parametrize(
        ("event_type", "category"),
        [
            ("checkout.session.completed", EventCategory.CHECKOUT_COMPLETED),
            ("customer.subscription.created", EventCategory.SUBSCRIPTION_UPSERT),
            ("customer.subscription.updated", EventCategory.SUBSCRIPTION_UPSERT),
            ("customer.subscription.deleted", EventCategory.SUBSCRIPTION_REMOVED),
            ("invoice.paid", EventCategory.INVOICE_SETTLED),
            ("invoice.payment_failed", EventCategory.INVOICE_FAILED),
            ("charge.refunded", EventCategory.UNHANDLED),
        ],
    )
    def test_categorize(self, event_type, category):
        assert categorize(event_type) == category


class TestVerifiedEvent:
    def test_expanded_customer_id(self):
        event = verified(
            "evt_1",
            "customer.subscription.updated",
            subscription(customer={"id": "cus_9", "metadata": {}}),
        )

        assert event.external_customer_id == "cus_9"

    def test_subscription_id_from_checkout(self):
        event = verified("evt_1", "checkout.session.completed", checkout_session())

        assert event.external_subscription_id == "sub_1"
        assert event.metadata["planId"] == "pro"

    def test_subscription_id_from_invoice(self):
        event = verified("evt_1", "invoice.paid", invoice())

        assert event.external_subscription_id == "sub_1"
        assert event.metadata == {}

    def test_missing_customer(self):
        event = verified("evt_1", "checkout.session.completed", checkout_session(customer=None))

        assert event.external_customer_id is None
