"""Reconciliation router: applies verified webhook events to billing profiles.

Every handler is a pure function of (event, current profile, context) that
returns the next profile, or None when the event must not touch the profile.
Handlers always set fields (merge semantics) and never increment, so
re-applying an event yields the same profile.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from toolspace_billing.constants import METADATA_PLAN_ID_KEY
from toolspace_billing.errors import (
    IdentityUnresolvedError,
    TransientStoreError,
    UnknownPlanError,
)
from toolspace_billing.models.billing import (
    PAID_PLANS,
    BillingEvent,
    BillingEventType,
    BillingProfile,
    PlanId,
    PricingConfig,
    SubscriptionStatus,
)
from toolspace_billing.models.events import EventCategory, VerifiedEvent
from toolspace_billing.services.billing_store import ProfileStore
from toolspace_billing.services.identity_resolver import IdentityResolver

logger = structlog.get_logger(__name__)

UNHANDLED_EVENT_ERROR = "unhandled event type"

_PLAN_RANK = {PlanId.FREE: 0, PlanId.PRO: 1, PlanId.PRO_PLUS: 2}

_PROVIDER_STATUSES: dict[str, SubscriptionStatus] = {
    s.value: s for s in SubscriptionStatus if s != SubscriptionStatus.FREE
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def map_subscription_status(raw_status: str | None) -> SubscriptionStatus:
    """Provider status -> internal status; anything unrecognized is ``free``."""
    return _PROVIDER_STATUSES.get(str(raw_status or ""), SubscriptionStatus.FREE)


def _parse_plan(raw: Any) -> PlanId | None:
    try:
        return PlanId(str(raw)) if raw else None
    except ValueError:
        return None


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def resolve_subscription_plan(subscription: dict[str, Any], pricing: PricingConfig) -> PlanId:
    """Plan from ``metadata.planId``, else from the first item's price.

    Raises:
        UnknownPlanError: neither source names a known plan.
    """
    raw_plan = (subscription.get("metadata") or {}).get(METADATA_PLAN_ID_KEY)
    plan_id = _parse_plan(raw_plan)
    if plan_id is not None:
        return plan_id

    price_id = (_first_item(subscription).get("price") or {}).get("id")
    plan_id = pricing.plan_for_price(price_id)
    if plan_id is not None:
        return plan_id
    raise UnknownPlanError(raw_plan or price_id)


def _period_bounds(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    # Newer API versions carry the period on the subscription item.
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _to_datetime(start), _to_datetime(end)


class HandlerContext(BaseModel):
    """Inputs a handler needs besides the event and the stored profile."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    now: datetime
    pricing: PricingConfig
    fallback_period: timedelta


Handler = Callable[[VerifiedEvent, BillingProfile | None, HandlerContext], BillingProfile | None]


def _link_customer(profile: BillingProfile, event: VerifiedEvent) -> None:
    customer_id = event.external_customer_id
    if not customer_id:
        return
    if profile.external_customer_id is None:
        profile.external_customer_id = customer_id
    elif profile.external_customer_id != customer_id:
        logger.warning(
            "billing_customer_mismatch",
            event_id=event.id,
            user_id=profile.user_id,
            stored_customer_id=profile.external_customer_id,
            event_customer_id=customer_id,
        )


def apply_checkout_completed(
    event: VerifiedEvent, profile: BillingProfile | None, ctx: HandlerContext
) -> BillingProfile | None:
    """Grant the purchased plan immediately, with a provisional period if needed."""
    profile = profile or BillingProfile.free(ctx.user_id, ctx.now)
    _link_customer(profile, event)
    if profile.external_subscription_id is None and event.external_subscription_id:
        profile.external_subscription_id = event.external_subscription_id

    plan_id = _parse_plan(event.metadata.get(METADATA_PLAN_ID_KEY))
    if plan_id not in PAID_PLANS:
        logger.warning(
            "billing_checkout_plan_unknown",
            event_id=event.id,
            user_id=ctx.user_id,
            plan_id=event.metadata.get(METADATA_PLAN_ID_KEY),
        )
        profile.updated_at = ctx.now
        return profile

    # Checkout never lowers a stored paid plan.
    if profile.plan_id not in PAID_PLANS or _PLAN_RANK[plan_id] > _PLAN_RANK[profile.plan_id]:
        profile.plan_id = plan_id
    if profile.status != SubscriptionStatus.TRIALING:
        profile.status = SubscriptionStatus.ACTIVE

    # Event time, not wall time, so a redelivery computes the same bounds.
    if profile.current_period_end is None or profile.current_period_end < event.created:
        profile.current_period_start = event.created
        profile.current_period_end = event.created + ctx.fallback_period
        profile.period_is_provisional = True

    profile.updated_at = ctx.now
    return profile


def apply_subscription_upsert(
    event: VerifiedEvent, profile: BillingProfile | None, ctx: HandlerContext
) -> BillingProfile | None:
    subscription = event.data_object
    profile = profile or BillingProfile.free(ctx.user_id, ctx.now)

    # An event without a customer belongs to whatever lineage is stored.
    same_lineage = not event.external_customer_id or profile.external_customer_id in (
        None,
        event.external_customer_id,
    )
    _link_customer(profile, event)
    if event.external_subscription_id:
        profile.external_subscription_id = event.external_subscription_id

    try:
        profile.plan_id = resolve_subscription_plan(subscription, ctx.pricing)
    except UnknownPlanError as e:
        logger.warning(
            "billing_unknown_plan_downgraded",
            event_id=event.id,
            user_id=ctx.user_id,
            plan_id=e.plan_id,
        )
        profile.plan_id = PlanId.FREE

    profile.status = map_subscription_status(subscription.get("status"))
    profile.cancel_at_period_end = bool(subscription.get("cancel_at_period_end", False))
    profile.trial_end = _to_datetime(subscription.get("trial_end"))

    period_start, period_end = _period_bounds(subscription)
    regressed = (
        same_lineage
        and not profile.period_is_provisional
        and period_end is not None
        and profile.current_period_end is not None
        and period_end < profile.current_period_end
    )
    if regressed:
        logger.info(
            "billing_period_regression_ignored",
            event_id=event.id,
            user_id=ctx.user_id,
            stored_period_end=profile.current_period_end.isoformat(),
            event_period_end=period_end.isoformat(),
        )
    elif period_end is not None:
        profile.current_period_start = period_start
        profile.current_period_end = period_end
        profile.period_is_provisional = False

    profile.updated_at = ctx.now
    return profile


def apply_subscription_removed(
    event: VerifiedEvent, profile: BillingProfile | None, ctx: HandlerContext
) -> BillingProfile | None:
    """Unconditional downgrade to free, whatever the current state.

    Period bounds are left in place as the high-water mark, so an upsert
    delivered after the removal cannot move the period backwards.
    """
    profile = profile or BillingProfile.free(ctx.user_id, ctx.now)
    _link_customer(profile, event)
    profile.plan_id = PlanId.FREE
    profile.status = SubscriptionStatus.CANCELED
    profile.cancel_at_period_end = False
    profile.trial_end = None
    profile.updated_at = ctx.now
    return profile


def audit_only(
    event: VerifiedEvent, profile: BillingProfile | None, ctx: HandlerContext
) -> BillingProfile | None:
    """Invoices are journaled but never change the profile."""
    return None


HANDLERS: dict[EventCategory, Handler] = {
    EventCategory.CHECKOUT_COMPLETED: apply_checkout_completed,
    EventCategory.SUBSCRIPTION_UPSERT: apply_subscription_upsert,
    EventCategory.SUBSCRIPTION_REMOVED: apply_subscription_removed,
    EventCategory.INVOICE_SETTLED: audit_only,
    EventCategory.INVOICE_FAILED: audit_only,
}

_unrouted = set(EventCategory) - set(HANDLERS) - {EventCategory.UNHANDLED}
if _unrouted:
    raise RuntimeError(f"No reconciliation handler for {sorted(c.value for c in _unrouted)}")


def _journal_status(event: VerifiedEvent, category: EventCategory) -> str | None:
    if category == EventCategory.SUBSCRIPTION_REMOVED:
        return SubscriptionStatus.CANCELED.value
    if category == EventCategory.INVOICE_SETTLED:
        return "paid"
    if category == EventCategory.INVOICE_FAILED:
        return "payment_failed"
    status = event.data_object.get("status")
    return str(status) if status else None


def _journal_metadata(event: VerifiedEvent, category: EventCategory) -> dict[str, Any]:
    obj = event.data_object
    metadata: dict[str, Any] = {"object_id": obj.get("id"), "category": category.value}
    if category in (EventCategory.INVOICE_SETTLED, EventCategory.INVOICE_FAILED):
        metadata["invoice_id"] = obj.get("id")
        metadata["amount_paid"] = obj.get("amount_paid")
        metadata["amount_due"] = obj.get("amount_due")
        metadata["currency"] = obj.get("currency")
        metadata["attempt_count"] = obj.get("attempt_count")
    return {k: v for k, v in metadata.items() if v is not None}


class ReconciliationResult(BaseModel):
    event_id: str
    event_type: str
    category: EventCategory
    user_id: str | None = None
    processed: bool
    duplicate: bool = False
    profile_changed: bool = False


class ReconciliationRouter:
    """Routes verified events to handlers and journals each event once."""

    def __init__(
        self,
        store: ProfileStore,
        resolver: IdentityResolver,
        pricing: PricingConfig,
        *,
        fallback_period_days: int = 30,
        now_provider: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.pricing = pricing
        self.fallback_period = timedelta(days=fallback_period_days)
        self.now_provider = now_provider
        self.handlers = dict(HANDLERS)

    def _journal_entry(
        self,
        event: VerifiedEvent,
        category: EventCategory,
        *,
        user_id: str | None,
        processed: bool,
        error: str | None = None,
        profile: BillingProfile | None = None,
    ) -> BillingEvent:
        event_plan = event.metadata.get(METADATA_PLAN_ID_KEY)
        return BillingEvent(
            event_id=event.id,
            type=event.type,
            user_id=user_id,
            external_customer_id=event.external_customer_id,
            external_subscription_id=event.external_subscription_id,
            plan_id=profile.plan_id.value if profile else event_plan,
            status=_journal_status(event, category),
            timestamp=_epoch_ms(self.now_provider()),
            metadata=_journal_metadata(event, category),
            processed=processed,
            error=error,
        )

    async def process(self, event: VerifiedEvent) -> ReconciliationResult:
        category = event.category
        log = logger.bind(event_id=event.id, event_type=event.type, category=category.value)

        existing = await self.store.get_event(event.id)
        if existing is not None and existing.processed:
            log.info("billing_event_duplicate", user_id=existing.user_id)
            return ReconciliationResult(
                event_id=event.id,
                event_type=event.type,
                category=category,
                user_id=existing.user_id,
                processed=True,
                duplicate=True,
            )

        if category == EventCategory.UNHANDLED:
            log.info("billing_event_unhandled")
            await self.store.record_event(
                self._journal_entry(
                    event, category, user_id=None, processed=False, error=UNHANDLED_EVENT_ERROR
                )
            )
            return ReconciliationResult(
                event_id=event.id, event_type=event.type, category=category, processed=False
            )

        try:
            identity = await self.resolver.resolve(event)
        except IdentityUnresolvedError as e:
            log.warning("billing_identity_unresolved", customer_id=e.external_customer_id)
            await self.store.record_event(
                self._journal_entry(event, category, user_id=None, processed=False, error=str(e))
            )
            return ReconciliationResult(
                event_id=event.id, event_type=event.type, category=category, processed=False
            )

        user_id = identity.user_id
        log = log.bind(user_id=user_id, identity_source=identity.source.value)
        ctx = HandlerContext(
            user_id=user_id,
            now=self.now_provider(),
            pricing=self.pricing,
            fallback_period=self.fallback_period,
        )
        handler = self.handlers[category]

        try:
            profile, changed = await self.store.merge_profile(
                user_id, lambda current: handler(event, current, ctx)
            )
        except Exception as e:
            log.error("billing_event_failed", error=str(e))
            try:
                await self.store.record_event(
                    self._journal_entry(
                        event, category, user_id=user_id, processed=False, error=str(e)
                    )
                )
            except TransientStoreError:
                log.error("billing_event_failure_not_journaled")
            raise

        await self.store.record_event(
            self._journal_entry(
                event,
                category,
                user_id=user_id,
                processed=True,
                profile=profile if changed else None,
            )
        )
        log.info(
            "billing_event_reconciled",
            profile_changed=changed,
            plan_id=profile.plan_id.value if profile else None,
            status=profile.status.value if profile else None,
        )
        return ReconciliationResult(
            event_id=event.id,
            event_type=event.type,
            category=category,
            user_id=user_id,
            processed=True,
            profile_changed=changed,
        )

    async def apply_manual_plan_change(
        self, user_id: str, plan_id: PlanId, *, actor_id: str
    ) -> BillingProfile:
        """Set a plan directly, bypassing Stripe, and journal it."""
        now = self.now_provider()
        previous: dict[str, PlanId] = {}

        def mutate(current: BillingProfile | None) -> BillingProfile:
            profile = current or BillingProfile.free(user_id, now)
            previous["plan_id"] = profile.plan_id
            profile.plan_id = plan_id
            if plan_id == PlanId.FREE:
                profile.status = SubscriptionStatus.FREE
                profile.current_period_start = None
                profile.current_period_end = None
                profile.period_is_provisional = False
            else:
                profile.status = SubscriptionStatus.ACTIVE
            profile.updated_at = now
            return profile

        profile, _ = await self.store.merge_profile(user_id, mutate)
        previous_plan = previous["plan_id"]
        event_type = (
            BillingEventType.MANUAL_UPGRADE
            if _PLAN_RANK[plan_id] >= _PLAN_RANK[previous_plan]
            else BillingEventType.MANUAL_DOWNGRADE
        )
        await self.store.record_event(
            BillingEvent(
                event_id=f"manual_{uuid.uuid4().hex}",
                type=event_type.value,
                user_id=user_id,
                external_customer_id=profile.external_customer_id,
                plan_id=plan_id.value,
                status=profile.status.value,
                timestamp=_epoch_ms(now),
                metadata={"actor_id": actor_id, "previous_plan_id": previous_plan.value},
                processed=True,
            )
        )
        logger.info(
            "billing_manual_plan_change",
            user_id=user_id,
            actor_id=actor_id,
            previous_plan_id=previous_plan.value,
            plan_id=plan_id.value,
        )
        return profile
