"""Stripe API wrapper."""

import asyncio
from typing import Any

import stripe

from toolspace_billing.config import StripeConfig
from toolspace_billing.constants import (
    CUSTOMER_USER_ID_KEYS,
    CUSTOMER_WRITE_BACK_KEY,
    METADATA_PLAN_ID_KEY,
    METADATA_USER_ID_KEY,
)
from toolspace_billing.models.billing import PAID_PLANS, PlanId, PricingConfig
from toolspace_billing.models.events import VerifiedEvent
from toolspace_billing.services import event_verifier


class StripeService:
    """Encapsulates Stripe SDK calls used by billing routes and reconciliation."""

    def __init__(
        self,
        config: StripeConfig,
        pricing: PricingConfig,
        *,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        self.pricing = pricing
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        stripe.api_key = config.secret_key

    def price_id_for_plan(self, plan_id: PlanId) -> str | None:
        plan = self.pricing.plans.get(plan_id)
        return plan.external_price_id if plan else None

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        return event_verifier.verify(
            payload,
            signature,
            self.config.webhook_secret,
            tolerance=self.webhook_tolerance_seconds,
        )

    async def create_customer(self, *, user_id: str, email: str | None) -> str:
        params: dict[str, Any] = {"metadata": {CUSTOMER_WRITE_BACK_KEY: user_id}}
        if email:
            params["email"] = email
        customer = await asyncio.to_thread(stripe.Customer.create, **params)
        return str(customer.id)

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: PlanId,
        customer_id: str,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        if plan_id not in PAID_PLANS:
            raise ValueError(f"Plan '{plan_id.value}' cannot be purchased")
        price_id = self.price_id_for_plan(plan_id)
        if not price_id:
            raise ValueError(f"No Stripe price configured for plan '{plan_id.value}'")

        # Every identity hint the webhook resolver understands is attached here.
        identity = {METADATA_USER_ID_KEY: user_id, METADATA_PLAN_ID_KEY: plan_id.value}
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "client_reference_id": user_id,
            "metadata": identity,
            "subscription_data": {"metadata": dict(identity)},
            "success_url": success_url or self.config.checkout_success_url,
            "cancel_url": cancel_url or self.config.checkout_cancel_url,
        }

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return {"id": session.id, "url": session.url}

    async def create_portal_session(
        self, *, customer_id: str, return_url: str | None = None
    ) -> dict[str, str]:
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url or self.config.portal_return_url,
        )
        return {"id": session.id, "url": session.url}

    async def annotate_customer(self, customer_id: str, user_id: str) -> None:
        """Store the resolved user id on the Stripe customer record."""
        await asyncio.to_thread(
            stripe.Customer.modify,
            customer_id,
            metadata={CUSTOMER_WRITE_BACK_KEY: user_id},
        )

    async def lookup_customer_user_id(self, customer_id: str) -> str | None:
        customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id)
        metadata = getattr(customer, "metadata", None) or {}
        for key in CUSTOMER_USER_ID_KEYS:
            value = metadata.get(key)
            if value:
                return str(value)
        return None

