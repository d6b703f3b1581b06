"""Billing error taxonomy.

Only SignatureError and TransientStoreError ever reach the webhook caller;
the others are absorbed into a best-effort state update and logged.
"""


class BillingError(Exception):
    """Base class for billing failures."""


class SignatureError(BillingError):
    """Webhook payload failed authenticity checks. Maps to HTTP 400."""


class IdentityUnresolvedError(BillingError):
    """No identity hint on the event matched an internal user."""

    def __init__(self, event_id: str, external_customer_id: str | None = None) -> None:
        super().__init__(f"Unable to resolve user for event {event_id}")
        self.event_id = event_id
        self.external_customer_id = external_customer_id


class TransientStoreError(BillingError):
    """Profile or journal write failed. Maps to HTTP 500 so the provider retries."""


class UnknownPlanError(BillingError):
    """Event referenced a plan outside the known set."""

    def __init__(self, plan_id: str | None) -> None:
        super().__init__(f"Unknown plan '{plan_id}'")
        self.plan_id = plan_id
