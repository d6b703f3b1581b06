"""Unit tests for the pure entitlements resolver."""

from datetime import timedelta

import pytest

from tests.helpers import T0, paid_profile
from toolspace_billing.models.billing import (
    BillingProfile,
    PlanId,
    SubscriptionStatus,
    UsageRecord,
)
from toolspace_billing.services.entitlements import format_bytes, load_pricing_config


def _free_profile() -> BillingProfile:
    return BillingProfile.free("user-1", T0)


def _usage(heavy: int = 0, light: int = 0) -> UsageRecord:
    return UsageRecord(date="2026-02-22", heavy_ops=heavy, light_ops=light)


class TestPricingConfig:
    def test_bundled_config_has_three_plans(self, pricing):
        assert set(pricing.plans) == {PlanId.FREE, PlanId.PRO, PlanId.PRO_PLUS}
        assert pricing.metadata.grace_period_days == 3

    def test_price_ids_map_back_to_plans(self, pricing):
        assert pricing.plan_for_price("price_pro_monthly") == PlanId.PRO
        assert pricing.plan_for_price("price_pro_plus_monthly") == PlanId.PRO_PLUS
        assert pricing.plan_for_price("price_other") is None
        assert pricing.plan_for_price(None) is None

    def test_config_is_immutable(self, pricing):
        with pytest.raises(Exception):
            pricing.version = "changed"

    def test_load_from_explicit_path(self, tmp_path, pricing):
        path = tmp_path / "pricing.json"
        path.write_text(pricing.model_dump_json(), encoding="utf-8")

        loaded = load_pricing_config(path)

        assert loaded == pricing


class TestEntitlementsFor:
    def test_known_plan(self, resolver):
        assert resolver.entitlements_for(PlanId.PRO).heavy_ops_per_day == 200

    def test_unknown_plan_defaults_to_free(self, resolver):
        free = resolver.entitlements_for(PlanId.FREE)
        assert resolver.entitlements_for("enterprise") == free


class TestHeavyOps:
    def test_free_user_at_cap_is_denied_with_pro_suggestion(self, resolver):
        decision = resolver.can_perform_heavy_op(_free_profile(), _usage(heavy=3))

        assert decision.allowed is False
        assert decision.requires_upgrade is True
        assert decision.suggested_plan == PlanId.PRO
        assert decision.current_usage == 3
        assert decision.limit == 3

    def test_free_user_below_cap_is_allowed(self, resolver):
        decision = resolver.can_perform_heavy_op(_free_profile(), _usage(heavy=2))

        assert decision.allowed is True
        assert decision.reason is None

    def test_missing_usage_counts_as_zero(self, resolver):
        decision = resolver.can_perform_heavy_op(_free_profile(), None)

        assert decision.allowed is True
        assert decision.current_usage == 0

    def test_pro_user_at_cap_is_pointed_to_pro_plus(self, resolver):
        decision = resolver.can_perform_heavy_op(paid_profile(), _usage(heavy=200))

        assert decision.allowed is False
        assert decision.suggested_plan == PlanId.PRO_PLUS
        assert decision.requires_upgrade is True

    def test_pro_plus_at_cap_has_nowhere_to_go(self, resolver):
        profile = paid_profile(plan_id=PlanId.PRO_PLUS)
        decision = resolver.can_perform_heavy_op(profile, _usage(heavy=2000))

        assert decision.allowed is False
        assert decision.requires_upgrade is False

    def test_light_ops_use_their_own_cap(self, resolver):
        profile = _free_profile()

        assert resolver.can_perform_light_op(profile, _usage(light=49)).allowed is True
        assert resolver.can_perform_light_op(profile, _usage(light=50)).allowed is False


class TestFileAndBatchSize:
    def test_file_within_free_limit(self, resolver):
        decision = resolver.can_process_file_size(_free_profile(), 10 * 1024 * 1024)
        assert decision.allowed is True

    def test_file_over_free_limit_suggests_pro(self, resolver):
        decision = resolver.can_process_file_size(_free_profile(), 20 * 1024 * 1024)

        assert decision.allowed is False
        assert decision.reason == "File size exceeds 10 MB limit"
        assert decision.suggested_plan == PlanId.PRO

    def test_file_over_pro_limit_suggests_pro_plus(self, resolver):
        decision = resolver.can_process_file_size(_free_profile(), 100 * 1024 * 1024)

        assert decision.suggested_plan == PlanId.PRO_PLUS

    def test_batch_over_limit(self, resolver):
        decision = resolver.can_process_batch_size(_free_profile(), 6)

        assert decision.allowed is False
        assert decision.reason == "Batch size exceeds 5 items limit"
        assert decision.suggested_plan == PlanId.PRO

    def test_batch_at_limit_is_allowed(self, resolver):
        assert resolver.can_process_batch_size(_free_profile(), 5).allowed is True

    def test_file_over_pro_limit_requires_upgrade_for_pro(self, resolver):
        decision = resolver.can_process_file_size(paid_profile(), 100 * 1024 * 1024)

        assert decision.requires_upgrade is True
        assert decision.suggested_plan == PlanId.PRO_PLUS

    def test_file_over_top_plan_limit_has_no_upgrade(self, resolver):
        profile = paid_profile(plan_id=PlanId.PRO_PLUS)

        decision = resolver.can_process_file_size(profile, 300 * 1024 * 1024)

        assert decision.allowed is False
        assert decision.requires_upgrade is False
        assert decision.suggested_plan == PlanId.PRO_PLUS

    def test_batch_over_top_plan_limit_has_no_upgrade(self, resolver):
        profile = paid_profile(plan_id=PlanId.PRO_PLUS)

        decision = resolver.can_process_batch_size(profile, 201)

        assert decision.allowed is False
        assert decision.requires_upgrade is False


class TestToolAccess:
    def test_restricted_tool_denied_on_free(self, resolver):
        decision = resolver.can_access_tool(_free_profile(), "image-resizer")

        assert decision.allowed is False
        assert decision.requires_upgrade is True
        assert decision.suggested_plan == PlanId.PRO

    def test_restricted_tool_allowed_on_pro(self, resolver):
        assert resolver.can_access_tool(paid_profile(), "image-resizer").allowed is True

    def test_unrestricted_tool_allowed_on_free(self, resolver):
        assert resolver.can_access_tool(_free_profile(), "file-merger").allowed is True

    def test_unknown_tool_denied(self, resolver):
        decision = resolver.can_access_tool(_free_profile(), "does-not-exist")

        assert decision.allowed is False
        assert decision.reason == "Tool not found"


class TestSubscriptionActive:
    def test_free_plan_is_always_active(self, resolver):
        profile = _free_profile()
        assert resolver.is_subscription_active(profile, T0 + timedelta(days=999)) is True

    def test_grace_period_boundary(self, resolver):
        period_end = T0
        profile = paid_profile(period_end=period_end)

        assert resolver.is_subscription_active(profile, period_end + timedelta(days=2.9)) is True
        assert resolver.is_subscription_active(profile, period_end + timedelta(days=3.1)) is False

    def test_exact_grace_end_is_still_active(self, resolver):
        profile = paid_profile(period_end=T0)
        assert resolver.is_subscription_active(profile, T0 + timedelta(days=3)) is True

    @pytest.mark.parametrize(
        "status",
        [
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.INCOMPLETE,
        ],
    )
    def test_non_active_status_is_inactive(self, resolver, status):
        profile = paid_profile(status=status)
        assert resolver.is_subscription_active(profile, T0) is False

    def test_trialing_without_period_end_is_active(self, resolver):
        profile = paid_profile(status=SubscriptionStatus.TRIALING, period_end=None)
        assert resolver.is_subscription_active(profile, T0 + timedelta(days=400)) is True

    def test_effective_plan_falls_back_to_free_after_grace(self, resolver):
        profile = paid_profile(period_end=T0)

        assert resolver.effective_plan(profile, T0) == PlanId.PRO
        assert resolver.effective_plan(profile, T0 + timedelta(days=4)) == PlanId.FREE


def test_format_bytes():
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(512) == "512 Bytes"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(10 * 1024 * 1024) == "10 MB"
