"""Builders shared by the billing test suite."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from toolspace_billing.models.billing import BillingProfile, PlanId, SubscriptionStatus
from toolspace_billing.models.events import VerifiedEvent

WEBHOOK_SECRET = "whsec_test_secret"
T0 = datetime(2026, 2, 22, 12, 0, tzinfo=UTC)


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime = T0):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


def ts(moment: datetime) -> int:
    return int(moment.timestamp())


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``body``."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(
    event_id: str,
    event_type: str,
    data_object: dict[str, Any],
    *,
    created: datetime = T0,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": ts(created),
        "livemode": False,
        "data": {"object": data_object},
    }


def event_body(*args, **kwargs) -> bytes:
    return json.dumps(event_payload(*args, **kwargs)).encode()


def verified(
    event_id: str,
    event_type: str,
    data_object: dict[str, Any],
    *,
    created: datetime = T0,
) -> VerifiedEvent:
    payload = event_payload(event_id, event_type, data_object, created=created)
    return VerifiedEvent(
        id=event_id,
        type=event_type,
        created=created,
        data_object=data_object,
        payload=payload,
    )


def checkout_session(
    *,
    user_id: str | None = "user-1",
    plan_id: str | None = "pro",
    customer: str | dict | None = "cus_1",
    client_reference_id: str | None = None,
) -> dict[str, Any]:
    metadata = {}
    if user_id:
        metadata["userId"] = user_id
    if plan_id:
        metadata["planId"] = plan_id
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "status": "complete",
        "customer": customer,
        "subscription": "sub_1",
        "client_reference_id": client_reference_id,
        "metadata": metadata,
    }


def subscription(
    *,
    status: str = "active",
    plan_id: str | None = "pro",
    user_id: str | None = "user-1",
    customer: str | dict | None = "cus_1",
    period_start: datetime = T0,
    period_end: datetime | None = T0 + timedelta(days=30),
    cancel_at_period_end: bool = False,
    trial_end: datetime | None = None,
    price_id: str = "price_pro_monthly",
) -> dict[str, Any]:
    metadata = {}
    if user_id:
        metadata["userId"] = user_id
    if plan_id:
        metadata["planId"] = plan_id
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
        "items": {"data": [{"price": {"id": price_id}}]},
        "current_period_start": ts(period_start),
        "current_period_end": ts(period_end) if period_end else None,
        "cancel_at_period_end": cancel_at_period_end,
        "trial_end": ts(trial_end) if trial_end else None,
    }


def invoice(*, customer: str = "cus_1", paid: bool = True) -> dict[str, Any]:
    return {
        "id": "in_1",
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_1",
        "amount_paid": 900 if paid else 0,
        "amount_due": 900,
        "currency": "usd",
        "attempt_count": 1 if paid else 2,
    }


def paid_profile(
    user_id: str = "user-1",
    *,
    plan_id: PlanId = PlanId.PRO,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    period_end: datetime | None = T0 + timedelta(days=30),
    customer_id: str | None = "cus_1",
) -> BillingProfile:
    return BillingProfile(
        user_id=user_id,
        external_customer_id=customer_id,
        plan_id=plan_id,
        status=status,
        current_period_start=T0,
        current_period_end=period_end,
        created_at=T0,
        updated_at=T0,
    )
