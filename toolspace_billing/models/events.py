"""Verified webhook events and their routing categories."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from toolspace_billing.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
)


class EventCategory(str, Enum):
    """Closed set of event categories the router knows how to handle."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPSERT = "subscription_upsert"
    SUBSCRIPTION_REMOVED = "subscription_removed"
    INVOICE_SETTLED = "invoice_settled"
    INVOICE_FAILED = "invoice_failed"
    UNHANDLED = "unhandled"


_CATEGORY_BY_TYPE: dict[str, EventCategory] = {
    EVENT_CHECKOUT_COMPLETED: EventCategory.CHECKOUT_COMPLETED,
    EVENT_SUBSCRIPTION_CREATED: EventCategory.SUBSCRIPTION_UPSERT,
    EVENT_SUBSCRIPTION_UPDATED: EventCategory.SUBSCRIPTION_UPSERT,
    EVENT_SUBSCRIPTION_DELETED: EventCategory.SUBSCRIPTION_REMOVED,
    EVENT_INVOICE_PAID: EventCategory.INVOICE_SETTLED,
    EVENT_INVOICE_PAYMENT_FAILED: EventCategory.INVOICE_FAILED,
}


def categorize(event_type: str) -> EventCategory:
    return _CATEGORY_BY_TYPE.get(event_type, EventCategory.UNHANDLED)


class VerifiedEvent(BaseModel):
    """A webhook event whose signature has been checked."""

    id: str
    type: str
    created: datetime
    livemode: bool = False
    data_object: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return categorize(self.type)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.data_object.get("metadata") or {}

    @property
    def customer_ref(self) -> str | dict | None:
        """The nested customer: a bare id or an expanded customer object."""
        return self.data_object.get("customer")

    @property
    def external_customer_id(self) -> str | None:
        customer = self.customer_ref
        if isinstance(customer, dict):
            customer = customer.get("id")
        return str(customer) if customer else None

    @property
    def external_subscription_id(self) -> str | None:
        obj = self.data_object
        if obj.get("object") == "subscription":
            return str(obj["id"]) if obj.get("id") else None
        subscription = obj.get("subscription")
        if isinstance(subscription, dict):
            subscription = subscription.get("id")
        return str(subscription) if subscription else None
