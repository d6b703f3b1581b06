"""
Business logic constants for the Toolspace billing service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(secrets, tolerances, fallback windows), see config.py.
"""

API_TITLE = "Toolspace Billing API"
API_VERSION = "1.0.0"

# --- Stripe event types routed by the reconciliation layer ---
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAID = "invoice.paid"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# --- Identity hint keys, in resolution priority order ---
METADATA_USER_ID_KEY = "userId"
METADATA_ALTERNATE_USER_ID_KEY = "firebaseUid"
CLIENT_REFERENCE_ID_KEY = "client_reference_id"
# Keys written onto the Stripe customer record
CUSTOMER_USER_ID_KEYS: tuple[str, ...] = ("firebaseUserId", "uid")
CUSTOMER_WRITE_BACK_KEY = "firebaseUserId"

METADATA_PLAN_ID_KEY = "planId"

# --- Statuses that keep a paid plan usable ---
ACTIVE_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"active", "trialing"})
