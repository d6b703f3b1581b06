"""Billing profile store, usage records and the billing event journal."""

import asyncio
import weakref
from collections.abc import Callable
from typing import Protocol

import structlog

from toolspace_billing.errors import TransientStoreError
from toolspace_billing.models.billing import BillingEvent, BillingProfile, UsageRecord

logger = structlog.get_logger(__name__)

ProfileMutator = Callable[[BillingProfile | None], BillingProfile | None]


class KeyedLocks:
    """One ``asyncio.Lock`` per key, forgotten once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class BillingRepository(Protocol):
    """Storage contract for billing state."""

    async def get_profile(self, user_id: str) -> BillingProfile | None:
        """Fetch a user's billing profile."""

    async def save_profile(self, profile: BillingProfile) -> BillingProfile:
        """Persist a billing profile (upsert on user_id)."""

    async def find_user_by_customer_id(self, external_customer_id: str) -> str | None:
        """Return the user linked to a Stripe customer id."""

    async def get_usage(self, user_id: str, day_key: str) -> UsageRecord | None:
        """Fetch the usage record for one day."""

    async def save_usage(self, user_id: str, record: UsageRecord) -> UsageRecord:
        """Persist a usage record (upsert on user_id + date)."""

    async def get_event(self, event_id: str) -> BillingEvent | None:
        """Fetch a journaled event."""

    async def record_event(self, event: BillingEvent) -> None:
        """Journal an event. A second write for the same event_id overwrites."""

    async def list_events(self, user_id: str, limit: int = 50) -> list[BillingEvent]:
        """Most recent journaled events for a user."""


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.profiles: dict[str, BillingProfile] = {}
        self.customer_to_user: dict[str, str] = {}
        self.usage: dict[tuple[str, str], UsageRecord] = {}
        self.events: dict[str, BillingEvent] = {}

    async def get_profile(self, user_id: str) -> BillingProfile | None:
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def save_profile(self, profile: BillingProfile) -> BillingProfile:
        stored = profile.model_copy(deep=True)
        self.profiles[stored.user_id] = stored
        if stored.external_customer_id:
            self.customer_to_user[stored.external_customer_id] = stored.user_id
        return stored.model_copy(deep=True)

    async def find_user_by_customer_id(self, external_customer_id: str) -> str | None:
        return self.customer_to_user.get(external_customer_id)

    async def get_usage(self, user_id: str, day_key: str) -> UsageRecord | None:
        record = self.usage.get((user_id, day_key))
        return record.model_copy() if record else None

    async def save_usage(self, user_id: str, record: UsageRecord) -> UsageRecord:
        self.usage[(user_id, record.date)] = record.model_copy()
        return record.model_copy()

    async def get_event(self, event_id: str) -> BillingEvent | None:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def record_event(self, event: BillingEvent) -> None:
        self.events[event.event_id] = event.model_copy(deep=True)

    async def list_events(self, user_id: str, limit: int = 50) -> list[BillingEvent]:
        matching = [e for e in self.events.values() if e.user_id == user_id]
        matching.sort(key=lambda e: e.timestamp, reverse=True)
        return [e.model_copy(deep=True) for e in matching[:limit]]


class SupabaseBillingRepository:
    """Supabase-backed repository for billing state."""

    def __init__(self, client, profiles_table: str, usage_table: str, events_table: str):
        self.client = client
        self.profiles_table = profiles_table
        self.usage_table = usage_table
        self.events_table = events_table

    async def get_profile(self, user_id: str) -> BillingProfile | None:
        response = (
            await self.client.table(self.profiles_table)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return BillingProfile.model_validate(rows[0])

    async def save_profile(self, profile: BillingProfile) -> BillingProfile:
        # Nulls are written explicitly so cleared period bounds stick.
        payload = profile.model_dump(mode="json")
        response = (
            await self.client.table(self.profiles_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return profile
        return BillingProfile.model_validate(rows[0])

    async def find_user_by_customer_id(self, external_customer_id: str) -> str | None:
        response = (
            await self.client.table(self.profiles_table)
            .select("user_id")
            .eq("external_customer_id", external_customer_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return rows[0]["user_id"] if rows else None

    async def get_usage(self, user_id: str, day_key: str) -> UsageRecord | None:
        response = (
            await self.client.table(self.usage_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("date", day_key)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return UsageRecord.model_validate(rows[0])

    async def save_usage(self, user_id: str, record: UsageRecord) -> UsageRecord:
        payload = {"user_id": user_id, **record.model_dump(mode="json")}
        await (
            self.client.table(self.usage_table)
            .upsert(payload, on_conflict="user_id,date")
            .execute()
        )
        return record

    async def get_event(self, event_id: str) -> BillingEvent | None:
        response = (
            await self.client.table(self.events_table)
            .select("*")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return BillingEvent.model_validate(rows[0])

    async def record_event(self, event: BillingEvent) -> None:
        await (
            self.client.table(self.events_table)
            .upsert(event.model_dump(mode="json"), on_conflict="event_id")
            .execute()
        )

    async def list_events(self, user_id: str, limit: int = 50) -> list[BillingEvent]:
        response = (
            await self.client.table(self.events_table)
            .select("*")
            .eq("user_id", user_id)
            .order("timestamp", desc=True)
            .limit(limit)
            .execute()
        )
        return [BillingEvent.model_validate(row) for row in response.data or []]


class ProfileStore:
    """Read-modify-write access to billing profiles.

    Each user id gets its own lock, so a merge for one user never interleaves
    with another merge for the same user while different users proceed in
    parallel. The lock is process-local; multi-instance deployments rely on
    handlers being idempotent merges.
    """

    def __init__(self, repository: BillingRepository) -> None:
        self.repository = repository
        self._locks = KeyedLocks()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks.get(user_id)

    async def get_profile(self, user_id: str) -> BillingProfile | None:
        try:
            return await self.repository.get_profile(user_id)
        except Exception as e:
            raise TransientStoreError(f"Failed to load billing profile: {e}") from e

    async def merge_profile(
        self, user_id: str, mutator: ProfileMutator
    ) -> tuple[BillingProfile | None, bool]:
        """Apply ``mutator`` to the stored profile atomically for this user.

        Returns the resulting profile and whether a write happened. A mutator
        returning ``None`` (or the unchanged profile) skips the write.
        """
        async with self.lock_for(user_id):
            current = await self.get_profile(user_id)
            updated = mutator(current.model_copy(deep=True) if current else None)
            if updated is None or updated == current:
                return current, False
            try:
                saved = await self.repository.save_profile(updated)
            except Exception as e:
                logger.error("billing_profile_write_failed", user_id=user_id, error=str(e))
                raise TransientStoreError(f"Failed to save billing profile: {e}") from e
            return saved, True

    async def find_user_by_customer_id(self, external_customer_id: str) -> str | None:
        try:
            return await self.repository.find_user_by_customer_id(external_customer_id)
        except Exception as e:
            raise TransientStoreError(f"Failed to look up customer: {e}") from e

    async def get_event(self, event_id: str) -> BillingEvent | None:
        try:
            return await self.repository.get_event(event_id)
        except Exception as e:
            raise TransientStoreError(f"Failed to load billing event: {e}") from e

    async def record_event(self, event: BillingEvent) -> None:
        try:
            await self.repository.record_event(event)
        except Exception as e:
            logger.error("billing_event_journal_failed", event_id=event.event_id, error=str(e))
            raise TransientStoreError(f"Failed to journal billing event: {e}") from e

    async def list_events(self, user_id: str, limit: int = 50) -> list[BillingEvent]:
        return await self.repository.list_events(user_id, limit)
