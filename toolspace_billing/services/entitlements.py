"""Entitlements resolver.

Pure functions over an injected PricingConfig and an already-loaded
profile/usage pair. Nothing here performs I/O except ``load_pricing_config``,
which runs once at startup.
"""

import math
from datetime import datetime, timedelta
from pathlib import Path

from toolspace_billing.constants import ACTIVE_SUBSCRIPTION_STATUSES
from toolspace_billing.models.billing import (
    BillingProfile,
    EntitlementDecision,
    Entitlements,
    Plan,
    PlanId,
    PricingConfig,
    UsageRecord,
)

DEFAULT_PRICING_PATH = Path(__file__).resolve().parent.parent / "data" / "pricing.json"


def load_pricing_config(path: str | Path | None = None) -> PricingConfig:
    """Read and validate the pricing table."""
    config_path = Path(path) if path else DEFAULT_PRICING_PATH
    return PricingConfig.model_validate_json(config_path.read_text(encoding="utf-8"))


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    exponent = min(int(math.log(size, 1024)), len(units) - 1)
    value = round(size / 1024**exponent, 2)
    return f"{value:g} {units[exponent]}"


class EntitlementsResolver:
    """Answers plan-permission questions from a fixed pricing table."""

    def __init__(self, pricing: PricingConfig) -> None:
        self.pricing = pricing

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.pricing.metadata.grace_period_days)

    def plan(self, plan_id: PlanId | str) -> Plan | None:
        try:
            return self.pricing.plans.get(PlanId(plan_id))
        except ValueError:
            return None

    def entitlements_for(self, plan_id: PlanId | str) -> Entitlements:
        """Entitlements for a plan; unknown plans get the free tier."""
        plan = self.plan(plan_id)
        if plan is None:
            return self.pricing.plans[PlanId.FREE].entitlements
        return plan.entitlements

    def _suggest_by_limit(self, value: int, attribute: str) -> PlanId:
        pro = self.pricing.plans.get(PlanId.PRO)
        if pro is not None and value <= getattr(pro.entitlements, attribute):
            return PlanId.PRO
        return PlanId.PRO_PLUS

    def _daily_decision(
        self, profile: BillingProfile, current: int, limit: int, label: str
    ) -> EntitlementDecision:
        if current >= limit:
            suggested = PlanId.PRO if profile.plan_id == PlanId.FREE else PlanId.PRO_PLUS
            return EntitlementDecision(
                allowed=False,
                reason=f"Daily {label} operation limit reached",
                current_usage=current,
                limit=limit,
                plan_id=profile.plan_id,
                requires_upgrade=suggested != profile.plan_id,
                suggested_plan=suggested,
            )
        return EntitlementDecision(
            allowed=True, current_usage=current, limit=limit, plan_id=profile.plan_id
        )

    def can_perform_heavy_op(
        self, profile: BillingProfile, usage: UsageRecord | None
    ) -> EntitlementDecision:
        limit = self.entitlements_for(profile.plan_id).heavy_ops_per_day
        current = usage.heavy_ops if usage else 0
        return self._daily_decision(profile, current, limit, "heavy")

    def can_perform_light_op(
        self, profile: BillingProfile, usage: UsageRecord | None
    ) -> EntitlementDecision:
        limit = self.entitlements_for(profile.plan_id).light_ops_per_day
        current = usage.light_ops if usage else 0
        return self._daily_decision(profile, current, limit, "light")

    def can_process_file_size(self, profile: BillingProfile, size: int) -> EntitlementDecision:
        max_size = self.entitlements_for(profile.plan_id).max_file_size
        if size > max_size:
            suggested = self._suggest_by_limit(size, "max_file_size")
            return EntitlementDecision(
                allowed=False,
                reason=f"File size exceeds {format_bytes(max_size)} limit",
                current_usage=size,
                limit=max_size,
                plan_id=profile.plan_id,
                requires_upgrade=suggested != profile.plan_id,
                suggested_plan=suggested,
            )
        return EntitlementDecision(
            allowed=True, current_usage=size, limit=max_size, plan_id=profile.plan_id
        )

    def can_process_batch_size(self, profile: BillingProfile, count: int) -> EntitlementDecision:
        max_batch = self.entitlements_for(profile.plan_id).max_batch_size
        if count > max_batch:
            suggested = self._suggest_by_limit(count, "max_batch_size")
            return EntitlementDecision(
                allowed=False,
                reason=f"Batch size exceeds {max_batch} items limit",
                current_usage=count,
                limit=max_batch,
                plan_id=profile.plan_id,
                requires_upgrade=suggested != profile.plan_id,
                suggested_plan=suggested,
            )
        return EntitlementDecision(
            allowed=True, current_usage=count, limit=max_batch, plan_id=profile.plan_id
        )

    def can_access_tool(self, profile: BillingProfile, tool_id: str) -> EntitlementDecision:
        tool = self.pricing.tools.get(tool_id)
        if tool is None:
            return EntitlementDecision(allowed=False, reason="Tool not found")

        plan = self.plan(profile.plan_id)
        if plan is None:
            return EntitlementDecision(allowed=False, reason="Invalid plan")

        if tool_id in plan.restrictions.heavy_tools and plan.restrictions.requires_upgrade:
            return EntitlementDecision(
                allowed=False,
                reason=f"{tool.name} requires {tool.min_plan.value} plan or higher",
                plan_id=profile.plan_id,
                requires_upgrade=True,
                suggested_plan=tool.min_plan,
            )
        return EntitlementDecision(allowed=True, plan_id=profile.plan_id)

    def is_subscription_active(self, profile: BillingProfile, now: datetime) -> bool:
        """Free is always active; paid plans honour status and the grace window."""
        if profile.plan_id == PlanId.FREE:
            return True
        if profile.status.value not in ACTIVE_SUBSCRIPTION_STATUSES:
            return False
        if profile.current_period_end is not None:
            return now <= profile.current_period_end + self.grace_period
        return True

    def effective_plan(self, profile: BillingProfile, now: datetime) -> PlanId:
        if self.is_subscription_active(profile, now):
            return profile.plan_id
        return PlanId.FREE
