"""Entitlement cache, quota persistence and the entitlement gate."""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

import structlog

from botanicmd.config import QuotaConfig
from botanicmd.models.auth import AuthUser
from botanicmd.models.billing import (
    UNLIMITED,
    AccessDecision,
    AccessReason,
    Entitlement,
    PlanTier,
    UserAccount,
)
from botanicmd.services.auth_session import AuthSessionBootstrapper

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AccountRepository(Protocol):
    """Durable plan + usage storage keyed by identity."""

    async def get_account(self, user_id: str) -> UserAccount | None:
        """Fetch a user account."""

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        """Persist account state."""


class InMemoryAccountRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.accounts: dict[str, UserAccount] = {}

    async def get_account(self, user_id: str) -> UserAccount | None:
        account = self.accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        stored = account.model_copy(deep=True)
        self.accounts[stored.user_id] = stored
        return stored.model_copy(deep=True)


class SupabaseAccountRepository:
    """Supabase-backed repository (``user_accounts`` table, one row per user)."""

    def __init__(self, client, table: str = "user_accounts") -> None:
        self.client = client
        self.table = table

    async def get_account(self, user_id: str) -> UserAccount | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return UserAccount.model_validate(rows[0])

    async def upsert_account(self, account: UserAccount) -> UserAccount:
        payload = account.model_dump(mode="json", exclude_none=True)
        response = (
            await self.client.table(self.table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            return account
        return UserAccount.model_validate(rows[0])


class EntitlementCache:
    """
    The only cross-attempt mutable state: plan tier and usage per user.

    Written by successful identifications and by subscription reconciliation,
    read by the gate. Accounts are loaded from the repository on first use
    and every write goes through to it, so quota survives a reload.
    """

    def __init__(
        self,
        repository: AccountRepository,
        config: QuotaConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config or QuotaConfig()
        self.now_provider = now_provider
        self._accounts: dict[str, UserAccount] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _load(self, user_id: str) -> UserAccount:
        account = self._accounts.get(user_id)
        if account is None:
            account = await self.repository.get_account(user_id) or UserAccount(user_id=user_id)
            self._accounts[user_id] = account
        return account

    async def _save(self, account: UserAccount, **changes) -> UserAccount:
        """Persist ``account`` with ``changes``; the cache only moves once the write lands."""
        updated = account.model_copy(update={**changes, "updated_at": self.now_provider()})
        await self.repository.upsert_account(updated)
        self._accounts[updated.user_id] = updated
        return updated

    def _project(self, account: UserAccount) -> Entitlement:
        if account.plan == PlanTier.PRO:
            return Entitlement(
                authenticated=True, plan_tier=PlanTier.PRO, used=account.usage_count, cap=UNLIMITED
            )
        cap = self.config.free_identifications
        # Usage accrued while on pro can exceed the free cap after a downgrade
        return Entitlement(
            authenticated=True,
            plan_tier=PlanTier.FREE,
            used=min(account.usage_count, cap),
            cap=cap,
        )

    async def get_account(self, user_id: str) -> UserAccount:
        async with self._locks[user_id]:
            return (await self._load(user_id)).model_copy()

    async def entitlement_for(self, user: AuthUser | None) -> Entitlement:
        if user is None:
            return Entitlement(authenticated=False, cap=self.config.free_identifications)
        async with self._locks[user.id]:
            return self._project(await self._load(user.id))

    async def record_usage(self, user_id: str) -> Entitlement:
        """Count one successful identification."""
        async with self._locks[user_id]:
            account = await self._load(user_id)
            account = await self._save(account, usage_count=account.usage_count + 1)
            logger.info("usage_recorded", user_id=user_id, usage_count=account.usage_count)
            return self._project(account)

    async def set_plan(self, user_id: str, plan: PlanTier) -> Entitlement:
        async with self._locks[user_id]:
            account = await self._load(user_id)
            if account.plan != plan:
                logger.info("plan_changed", user_id=user_id, previous=account.plan.value, plan=plan.value)
                account = await self._save(account, plan=plan)
            return self._project(account)

    def invalidate(self, user_id: str) -> None:
        """Drop the cached account so the next read goes to the repository."""
        self._accounts.pop(user_id, None)


class EntitlementGate:
    """
    Decides whether the current user may start a costed operation.

    Never cached: plan and usage can change between attempts (mid-session
    upgrade), so every call re-derives the entitlement. A LOADING session is
    awaited rather than read as signed out.
    """

    def __init__(
        self,
        session: AuthSessionBootstrapper,
        cache: EntitlementCache,
        auth_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.auth_timeout = auth_timeout

    async def current_user(self) -> AuthUser | None:
        state = await self.session.wait_until_resolved(self.auth_timeout)
        return state.user if state.is_authenticated else None

    async def check_access(self) -> AccessDecision:
        return await self.evaluate(await self.current_user())

    async def evaluate(self, user: AuthUser | None) -> AccessDecision:
        """Decision for an already-resolved user (None = signed out)."""
        entitlement = await self.cache.entitlement_for(user)

        if not entitlement.authenticated:
            decision = AccessDecision(
                allowed=False, reason=AccessReason.UNAUTHENTICATED, entitlement=entitlement
            )
        elif entitlement.plan_tier == PlanTier.PRO:
            decision = AccessDecision(
                allowed=True, reason=AccessReason.PRO_UNLIMITED, entitlement=entitlement
            )
        elif not entitlement.is_unlimited and entitlement.used >= entitlement.cap:
            decision = AccessDecision(
                allowed=False, reason=AccessReason.QUOTA_EXHAUSTED, entitlement=entitlement
            )
        else:
            decision = AccessDecision(
                allowed=True, reason=AccessReason.FREE_TIER_AVAILABLE, entitlement=entitlement
            )

        logger.debug(
            "entitlement_checked",
            allowed=decision.allowed,
            reason=decision.reason.value,
            used=entitlement.used,
            cap=entitlement.cap,
        )
        return decision

    async def check_pro(self) -> AccessDecision:
        """Pro-only features (the garden) need a pro plan, not just quota."""
        decision = await self.check_access()
        if decision.allowed and decision.entitlement.plan_tier != PlanTier.PRO:
            return AccessDecision(
                allowed=False, reason=AccessReason.PRO_REQUIRED, entitlement=decision.entitlement
            )
        return decision
