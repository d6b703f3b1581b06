"""Maps a webhook event onto exactly one internal user id.

Resolution walks an ordered list of hint strategies and stops at the first
non-empty answer:

1. ``metadata.userId`` on the event object
2. ``metadata.firebaseUid`` (older naming for the same id)
3. ``client_reference_id`` (checkout sessions only)
4. the Stripe customer: its expanded metadata, then the stored
   customer -> user association, then the live customer record
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel

from toolspace_billing.constants import (
    CLIENT_REFERENCE_ID_KEY,
    CUSTOMER_USER_ID_KEYS,
    METADATA_ALTERNATE_USER_ID_KEY,
    METADATA_USER_ID_KEY,
)
from toolspace_billing.errors import IdentityUnresolvedError
from toolspace_billing.models.events import EventCategory, VerifiedEvent
from toolspace_billing.services.billing_store import ProfileStore

logger = structlog.get_logger(__name__)


class IdentitySource(str, Enum):
    METADATA_USER_ID = "metadata_user_id"
    METADATA_ALTERNATE_KEY = "metadata_alternate_key"
    CLIENT_REFERENCE_ID = "client_reference_id"
    CUSTOMER_LOOKUP = "customer_lookup"


class ResolvedIdentity(BaseModel):
    user_id: str
    source: IdentitySource
    external_customer_id: str | None = None


class CustomerDirectory(Protocol):
    """Read/write access to the payment provider's customer records."""

    async def lookup_customer_user_id(self, customer_id: str) -> str | None:
        """User id stored on the customer record, if any."""

    async def annotate_customer(self, customer_id: str, user_id: str) -> None:
        """Store the user id on the customer record."""


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _event_metadata(event: VerifiedEvent) -> dict[str, Any]:
    metadata = dict(event.metadata)
    # Invoices carry the subscription's metadata in a nested block.
    details = event.data_object.get("subscription_details") or {}
    for key, value in (details.get("metadata") or {}).items():
        metadata.setdefault(key, value)
    return metadata


def from_metadata_user_id(event: VerifiedEvent) -> str | None:
    return _clean(_event_metadata(event).get(METADATA_USER_ID_KEY))


def from_metadata_alternate_key(event: VerifiedEvent) -> str | None:
    return _clean(_event_metadata(event).get(METADATA_ALTERNATE_USER_ID_KEY))


def from_client_reference_id(event: VerifiedEvent) -> str | None:
    if event.category != EventCategory.CHECKOUT_COMPLETED:
        return None
    return _clean(event.data_object.get(CLIENT_REFERENCE_ID_KEY))


def from_expanded_customer(event: VerifiedEvent) -> str | None:
    customer = event.customer_ref
    if not isinstance(customer, dict):
        return None
    metadata = customer.get("metadata") or {}
    for key in CUSTOMER_USER_ID_KEYS:
        value = _clean(metadata.get(key))
        if value:
            return value
    return None


IdentityStrategy = Callable[[VerifiedEvent], str | None]

IDENTITY_STRATEGIES: list[tuple[IdentitySource, IdentityStrategy]] = [
    (IdentitySource.METADATA_USER_ID, from_metadata_user_id),
    (IdentitySource.METADATA_ALTERNATE_KEY, from_metadata_alternate_key),
    (IdentitySource.CLIENT_REFERENCE_ID, from_client_reference_id),
    (IdentitySource.CUSTOMER_LOOKUP, from_expanded_customer),
]


class IdentityResolver:
    """Resolves events to users, with a stored cross-reference as last resort."""

    def __init__(
        self,
        store: ProfileStore,
        directory: CustomerDirectory | None = None,
        strategies: list[tuple[IdentitySource, IdentityStrategy]] | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.strategies = strategies or IDENTITY_STRATEGIES

    async def resolve(self, event: VerifiedEvent) -> ResolvedIdentity:
        customer_id = event.external_customer_id

        for source, strategy in self.strategies:
            user_id = strategy(event)
            if user_id:
                return ResolvedIdentity(
                    user_id=user_id, source=source, external_customer_id=customer_id
                )

        if customer_id:
            user_id = await self.store.find_user_by_customer_id(customer_id)
            if user_id:
                await self._write_back(customer_id, user_id, event.id)
                return ResolvedIdentity(
                    user_id=user_id,
                    source=IdentitySource.CUSTOMER_LOOKUP,
                    external_customer_id=customer_id,
                )

            user_id = await self._lookup_directory(customer_id, event.id)
            if user_id:
                return ResolvedIdentity(
                    user_id=user_id,
                    source=IdentitySource.CUSTOMER_LOOKUP,
                    external_customer_id=customer_id,
                )

        raise IdentityUnresolvedError(event.id, customer_id)

    async def _lookup_directory(self, customer_id: str, event_id: str) -> str | None:
        if self.directory is None:
            return None
        try:
            return _clean(await self.directory.lookup_customer_user_id(customer_id))
        except Exception as e:
            logger.warning(
                "billing_customer_lookup_failed",
                event_id=event_id,
                customer_id=customer_id,
                error=str(e),
            )
            return None

    async def _write_back(self, customer_id: str, user_id: str, event_id: str) -> None:
        """Best effort: tag the customer so later events resolve from metadata."""
        if self.directory is None:
            return
        try:
            await self.directory.annotate_customer(customer_id, user_id)
            logger.info(
                "billing_customer_annotated",
                event_id=event_id,
                customer_id=customer_id,
                user_id=user_id,
            )
        except Exception as e:
            logger.warning(
                "billing_customer_annotation_failed",
                event_id=event_id,
                customer_id=customer_id,
                error=str(e),
            )
