"""Stripe webhook signature verification.

The signature covers the raw request bytes exactly as delivered, so the
payload is verified before it is parsed and is never re-serialized.
"""

import json
from datetime import UTC, datetime

import stripe

from toolspace_billing.errors import SignatureError
from toolspace_billing.models.events import VerifiedEvent


def verify(
    raw_payload: bytes,
    signature_header: str | None,
    shared_secret: str,
    tolerance: int | None = 300,
) -> VerifiedEvent:
    """Check ``Stripe-Signature`` against the raw payload and parse the event.

    Raises:
        SignatureError: header missing or malformed, signature mismatch,
            stale timestamp, or a body that is not a Stripe event.
    """
    if not shared_secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature_header:
        raise SignatureError("Missing Stripe-Signature header")

    try:
        body = raw_payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureError("Webhook payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(body, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as e:
        # Stripe's own message never echoes the secret or the expected digest.
        raise SignatureError(f"Invalid webhook signature: {e.user_message or 'verification failed'}") from e

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise SignatureError("Webhook payload is not valid JSON") from e

    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise SignatureError("Webhook payload is not a Stripe event")

    data = payload.get("data", {})
    data_object = data.get("object", {}) if isinstance(data, dict) else None
    if not isinstance(data_object, dict):
        raise SignatureError("Webhook payload is not a Stripe event")

    created = payload.get("created")
    try:
        created_at = datetime.fromtimestamp(int(created), tz=UTC) if created else datetime.now(UTC)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise SignatureError("Webhook payload has an invalid created timestamp") from e

    return VerifiedEvent(
        id=str(payload["id"]),
        type=str(payload["type"]),
        created=created_at,
        livemode=bool(payload.get("livemode", False)),
        data_object=data_object,
        payload=payload,
    )
