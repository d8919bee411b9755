"""Subscription records and the plan they authorize."""

from datetime import UTC, datetime
from typing import Protocol

import structlog

from botanicmd.models.billing import PlanTier, SubscriptionRecord

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionRepository(Protocol):
    """Storage contract for webhook-written subscription rows."""

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        """Fetch the subscription row for a user."""

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        """Fetch the subscription row by Stripe customer ID."""

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert or replace the row for ``record.user_id``."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[str, SubscriptionRecord] = {}
        self.customer_to_user: dict[str, str] = {}
        self.processed_events: set[str] = set()

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        user_id = self.customer_to_user.get(customer_id)
        if not user_id:
            return None
        return await self.get_by_user(user_id)

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = record.model_copy(deep=True)
        self.records[stored.user_id] = stored
        if stored.stripe_customer_id:
            self.customer_to_user[stored.stripe_customer_id] = stored.user_id
        return stored.model_copy(deep=True)

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True


class SupabaseSubscriptionRepository:
    """Supabase-backed repository (``subscriptions`` table, one row per user)."""

    def __init__(
        self,
        client,
        table: str = "subscriptions",
        webhook_events_table: str = "stripe_webhook_events",
    ) -> None:
        self.client = client
        self.table = table
        self.webhook_events_table = webhook_events_table

    async def _first(self, column: str, value: str) -> SubscriptionRecord | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return SubscriptionRecord.model_validate(rows[0])

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        return await self._first("user_id", user_id)

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        return await self._first("stripe_customer_id", customer_id)

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        payload = record.model_dump(mode="json", exclude_none=True)
        payload["updated_at"] = _utcnow().isoformat()
        response = (
            await self.client.table(self.table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            return record
        return SubscriptionRecord.model_validate(rows[0])

    async def mark_webhook_processed(self, event_id: str) -> bool:
        existing = (
            await self.client.table(self.webhook_events_table)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        if existing.data:
            return False

        await self.client.table(self.webhook_events_table).insert(
            {"event_id": event_id, "processed_at": _utcnow().isoformat()}
        ).execute()
        return True


class SubscriptionService:
    """
    Reads the subscription source of truth.

    Only ``active`` and ``trialing`` authorize the pro tier; every other
    status, a missing row, and a failed lookup all mean free.
    """

    def __init__(self, repository: SubscriptionRepository) -> None:
        self.repository = repository

    async def fetch_subscription(self, user_id: str) -> SubscriptionRecord | None:
        """Like ``get_user_subscription`` but lookup failures propagate."""
        return await self.repository.get_by_user(user_id)

    async def get_user_subscription(self, user_id: str) -> SubscriptionRecord | None:
        try:
            record = await self.fetch_subscription(user_id)
        except Exception as e:
            logger.warning("subscription_lookup_failed", user_id=user_id, error=str(e))
            return None

        if record is None:
            logger.debug("subscription_not_found", user_id=user_id)
        return record

    async def has_active_subscription(self, user_id: str) -> bool:
        record = await self.get_user_subscription(user_id)
        return record is not None and record.is_active

    async def sync_user_plan(self, user_id: str) -> PlanTier:
        record = await self.get_user_subscription(user_id)
        if record is None:
            return PlanTier.FREE
        if not record.is_active:
            logger.info("subscription_inactive", user_id=user_id, status=record.status.value)
            return PlanTier.FREE
        return PlanTier.PRO

    async def record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = await self.repository.upsert(record)
        logger.info(
            "subscription_recorded",
            user_id=record.user_id,
            status=record.status.value,
            plan_type=record.plan_type.value,
        )
        return stored

    async def process_webhook_event_id(self, event_id: str) -> bool:
        return await self.repository.mark_webhook_processed(event_id)
