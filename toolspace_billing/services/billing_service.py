"""Request-path facade over the profile store, usage counter and entitlements."""

from collections.abc import Callable
from datetime import UTC, datetime

from toolspace_billing.config import BillingConfig
from toolspace_billing.models.billing import (
    BillingProfile,
    BillingStatus,
    EntitlementDecision,
    UsageRecord,
)
from toolspace_billing.services.billing_store import ProfileStore
from toolspace_billing.services.entitlements import EntitlementsResolver
from toolspace_billing.services.usage_counter import UsageCounter


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingService:
    """Loads committed profile/usage snapshots and asks the resolver about them."""

    def __init__(
        self,
        store: ProfileStore,
        usage: UsageCounter,
        entitlements: EntitlementsResolver,
        config: BillingConfig,
        now_provider: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.usage = usage
        self.entitlements = entitlements
        self.config = config
        self.now_provider = now_provider

    async def get_profile(self, user_id: str) -> BillingProfile:
        """Stored profile, or a default free one (not persisted)."""
        profile = await self.store.get_profile(user_id)
        return profile or BillingProfile.free(user_id, self.now_provider())

    async def _effective_snapshot(self, user_id: str) -> tuple[BillingProfile, UsageRecord]:
        profile = await self.get_profile(user_id)
        effective = profile.model_copy(
            update={"plan_id": self.entitlements.effective_plan(profile, self.now_provider())}
        )
        return effective, await self.usage.current(user_id)

    async def get_status(self, user_id: str) -> BillingStatus:
        now = self.now_provider()
        profile = await self.get_profile(user_id)
        usage = await self.usage.current(user_id)
        effective_plan = self.entitlements.effective_plan(profile, now)
        entitlements = self.entitlements.entitlements_for(effective_plan)

        return BillingStatus(
            billing_enabled=self.config.enabled,
            plan_id=profile.plan_id,
            effective_plan_id=effective_plan,
            status=profile.status,
            is_active=self.entitlements.is_subscription_active(profile, now),
            cancel_at_period_end=profile.cancel_at_period_end,
            current_period_end=profile.current_period_end,
            trial_end=profile.trial_end,
            entitlements=entitlements,
            usage=usage,
            heavy_ops_remaining=max(0, entitlements.heavy_ops_per_day - usage.heavy_ops),
            light_ops_remaining=max(0, entitlements.light_ops_per_day - usage.light_ops),
        )

    async def check_heavy_op(self, user_id: str) -> EntitlementDecision:
        if not self.config.enabled:
            return EntitlementDecision(allowed=True, reason="billing_disabled")
        profile, usage = await self._effective_snapshot(user_id)
        return self.entitlements.can_perform_heavy_op(profile, usage)

    async def check_tool_access(self, user_id: str, tool_id: str) -> EntitlementDecision:
        if not self.config.enabled:
            return EntitlementDecision(allowed=True, reason="billing_disabled")
        profile, _ = await self._effective_snapshot(user_id)
        return self.entitlements.can_access_tool(profile, tool_id)

    async def record_usage(
        self,
        user_id: str,
        *,
        heavy_ops: int = 0,
        light_ops: int = 0,
        files_processed: int = 0,
        bytes_processed: int = 0,
    ) -> UsageRecord:
        return await self.usage.increment(
            user_id,
            heavy_ops=heavy_ops,
            light_ops=light_ops,
            files_processed=files_processed,
            bytes_processed=bytes_processed,
        )
