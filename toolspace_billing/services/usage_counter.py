"""Per-user, per-day usage counters."""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from toolspace_billing.errors import TransientStoreError
from toolspace_billing.models.billing import UsageRecord
from toolspace_billing.services.billing_store import BillingRepository, KeyedLocks

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def usage_day_key(now: datetime) -> str:
    """yyyy-mm-dd of ``now`` in UTC. A new day means a new record."""
    return now.astimezone(UTC).date().isoformat()


class UsageCounter:
    """Monotonic daily counters consumed by entitlement checks."""

    def __init__(
        self,
        repository: BillingRepository,
        now_provider: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.now_provider = now_provider
        self._locks = KeyedLocks()

    async def current(self, user_id: str) -> UsageRecord:
        """Today's record, or an empty unsaved one when nothing ran yet."""
        day_key = usage_day_key(self.now_provider())
        record = await self.repository.get_usage(user_id, day_key)
        return record or UsageRecord.empty(day_key)

    async def increment(
        self,
        user_id: str,
        *,
        heavy_ops: int = 0,
        light_ops: int = 0,
        files_processed: int = 0,
        bytes_processed: int = 0,
    ) -> UsageRecord:
        deltas = (heavy_ops, light_ops, files_processed, bytes_processed)
        if any(delta < 0 for delta in deltas):
            raise ValueError("Usage counters only move forward")

        async with self._locks.get(user_id):
            now = self.now_provider()
            day_key = usage_day_key(now)
            record = await self.repository.get_usage(user_id, day_key)
            if record is None:
                record = UsageRecord.empty(day_key)

            record.heavy_ops += heavy_ops
            record.light_ops += light_ops
            record.files_processed += files_processed
            record.bytes_processed += bytes_processed
            record.last_updated = now

            try:
                saved = await self.repository.save_usage(user_id, record)
            except Exception as e:
                logger.error("usage_write_failed", user_id=user_id, date=day_key, error=str(e))
                raise TransientStoreError(f"Failed to save usage record: {e}") from e

        logger.debug(
            "usage_incremented",
            user_id=user_id,
            date=day_key,
            heavy_ops=saved.heavy_ops,
            light_ops=saved.light_ops,
        )
        return saved
