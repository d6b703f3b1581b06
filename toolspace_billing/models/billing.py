"""Billing, usage and entitlement models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PlanId(str, Enum):
    """Supported billing plans."""

    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "pro_plus"


PAID_PLANS: frozenset[PlanId] = frozenset({PlanId.PRO, PlanId.PRO_PLUS})


class SubscriptionStatus(str, Enum):
    """Internal subscription status vocabulary."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    FREE = "free"


class BillingEventType(str, Enum):
    """Journaled event types."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    MANUAL_UPGRADE = "manual_upgrade"
    MANUAL_DOWNGRADE = "manual_downgrade"


class BillingProfile(BaseModel):
    """Persisted billing state for a user (one row per user)."""

    user_id: str
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    plan_id: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.FREE
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    # True while the bounds are the checkout fallback, not the subscription's own
    period_is_provisional: bool = False
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def free(cls, user_id: str, now: datetime) -> "BillingProfile":
        return cls(user_id=user_id, created_at=now, updated_at=now)


class UsageRecord(BaseModel):
    """Per-user usage counters for one UTC calendar day."""

    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    heavy_ops: int = Field(default=0, ge=0)
    light_ops: int = Field(default=0, ge=0)
    files_processed: int = Field(default=0, ge=0)
    bytes_processed: int = Field(default=0, ge=0)
    last_updated: datetime | None = None

    @classmethod
    def empty(cls, day_key: str) -> "UsageRecord":
        return cls(date=day_key)


class BillingEvent(BaseModel):
    """Append-only audit entry keyed by the provider event id."""

    event_id: str
    # Known BillingEventType values, or the raw provider type when unhandled
    type: str
    user_id: str | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    plan_id: str | None = None
    status: str | None = None
    timestamp: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# Pricing configuration
# ---------------------------------------------------------------------------


class Entitlements(BaseModel):
    """Limits granted by a plan."""

    model_config = ConfigDict(frozen=True)

    heavy_ops_per_day: int = Field(ge=0)
    light_ops_per_day: int = Field(ge=0)
    max_file_size: int = Field(ge=0, description="Bytes")
    max_batch_size: int = Field(ge=0)
    priority_queue: bool = False
    support_level: Literal["community", "email", "priority"] = "community"
    can_export_batch: bool = False
    advanced_features: bool = False


class PlanPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0, description="Cents")
    currency: str = "usd"
    interval: Literal["month", "year"] | None = None


class PlanRestrictions(BaseModel):
    model_config = ConfigDict(frozen=True)

    heavy_tools: tuple[str, ...] = ()
    requires_upgrade: bool = False


class Plan(BaseModel):
    """A purchasable plan and its entitlements."""

    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    display_name: str
    description: str = ""
    price: PlanPrice
    external_price_id: str | None = None
    features: tuple[str, ...] = ()
    entitlements: Entitlements
    restrictions: PlanRestrictions = Field(default_factory=PlanRestrictions)


class ToolMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    category: Literal["light", "heavy"]
    min_plan: PlanId
    description: str = ""


class PricingMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    trial_days: int = Field(default=0, ge=0)
    grace_period_days: float = Field(default=3, ge=0)
    default_plan: PlanId = PlanId.FREE
    support_email: str = ""


class PricingConfig(BaseModel):
    """Process-wide pricing table. Loaded once, never mutated."""

    model_config = ConfigDict(frozen=True)

    version: str
    plans: dict[PlanId, Plan]
    tools: dict[str, ToolMetadata] = Field(default_factory=dict)
    metadata: PricingMetadata = Field(default_factory=PricingMetadata)

    def plan_for_price(self, price_id: str | None) -> PlanId | None:
        if not price_id:
            return None
        for plan in self.plans.values():
            if plan.external_price_id and plan.external_price_id == price_id:
                return plan.id
        return None


# ---------------------------------------------------------------------------
# Computed responses
# ---------------------------------------------------------------------------


class EntitlementDecision(BaseModel):
    """Answer to "may this user do X right now"."""

    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    plan_id: PlanId | None = None
    requires_upgrade: bool = False
    suggested_plan: PlanId | None = None


class BillingStatus(BaseModel):
    """Computed billing status returned to the frontend."""

    billing_enabled: bool
    plan_id: PlanId
    effective_plan_id: PlanId
    status: SubscriptionStatus
    is_active: bool
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    entitlements: Entitlements
    usage: UsageRecord
    heavy_ops_remaining: int
    light_ops_remaining: int
