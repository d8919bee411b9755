"""Tests for the entitlement cache, account persistence and the entitlement gate."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from botanicmd.config import QuotaConfig
from botanicmd.models.auth import AuthUser
from botanicmd.models.billing import UNLIMITED, AccessReason, PlanTier, UserAccount
from botanicmd.services.auth_session import AuthSessionBootstrapper
from botanicmd.services.entitlements import (
    EntitlementCache,
    EntitlementGate,
    InMemoryAccountRepository,
    SupabaseAccountRepository,
)


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_cache(repo: InMemoryAccountRepository | None = None, clock: MutableClock | None = None):
    return EntitlementCache(
        repo or InMemoryAccountRepository(),
        QuotaConfig(free_identifications=3),
        now_provider=clock or MutableClock(datetime(2026, 3, 1, tzinfo=UTC)),
    )


async def make_gate(make_auth_backend, user: AuthUser | None, cache: EntitlementCache) -> EntitlementGate:
    session = AuthSessionBootstrapper(make_auth_backend(user))
    await session.start()
    return EntitlementGate(session, cache)


class TestEntitlementCache:
    async def test_new_user_starts_free_with_full_quota(self, user: AuthUser):
        entitlement = await make_cache().entitlement_for(user)

        assert entitlement.authenticated is True
        assert entitlement.plan_tier == PlanTier.FREE
        assert entitlement.used == 0
        assert entitlement.cap == 3
        assert entitlement.remaining == 3

    async def test_signed_out_projection(self):
        entitlement = await make_cache().entitlement_for(None)

        assert entitlement.authenticated is False

    async def test_record_usage_persists(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        cache = make_cache(repo)

        await cache.record_usage(user.id)
        entitlement = await cache.record_usage(user.id)

        assert entitlement.used == 2
        assert repo.accounts[user.id].usage_count == 2
        assert repo.accounts[user.id].updated_at == datetime(2026, 3, 1, tzinfo=UTC)

    async def test_failed_usage_write_leaves_cache_untouched(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.accounts[user.id] = UserAccount(user_id=user.id, usage_count=1)
        cache = make_cache(repo)
        await cache.entitlement_for(user)
        repo.upsert_account = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(ConnectionError):
            await cache.record_usage(user.id)

        assert (await cache.get_account(user.id)).usage_count == 1
        assert repo.accounts[user.id].usage_count == 1

    async def test_failed_plan_write_keeps_previous_plan(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.upsert_account = AsyncMock(side_effect=ConnectionError("db down"))
        cache = make_cache(repo)

        with pytest.raises(ConnectionError):
            await cache.set_plan(user.id, PlanTier.PRO)

        assert (await cache.entitlement_for(user)).plan_tier == PlanTier.FREE

    async def test_usage_survives_a_new_cache(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        await make_cache(repo).record_usage(user.id)

        entitlement = await make_cache(repo).entitlement_for(user)

        assert entitlement.used == 1

    async def test_concurrent_usage_is_not_lost(self, user: AuthUser):
        cache = make_cache()

        await asyncio.gather(*(cache.record_usage(user.id) for _ in range(5)))

        assert (await cache.get_account(user.id)).usage_count == 5

    async def test_pro_is_unlimited(self, user: AuthUser):
        cache = make_cache()

        entitlement = await cache.set_plan(user.id, PlanTier.PRO)

        assert entitlement.cap == UNLIMITED
        assert entitlement.remaining is None

    async def test_downgrade_clamps_usage_to_free_cap(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.accounts[user.id] = UserAccount(user_id=user.id, plan=PlanTier.PRO, usage_count=12)
        cache = make_cache(repo)

        entitlement = await cache.set_plan(user.id, PlanTier.FREE)

        assert entitlement.used == 3
        assert entitlement.cap == 3
        assert repo.accounts[user.id].usage_count == 12

    async def test_set_same_plan_does_not_write(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.upsert_account = AsyncMock(wraps=repo.upsert_account)
        cache = make_cache(repo)

        await cache.set_plan(user.id, PlanTier.FREE)

        repo.upsert_account.assert_not_awaited()

    async def test_invalidate_rereads_repository(self, user: AuthUser):
        repo = InMemoryAccountRepository()
        cache = make_cache(repo)
        await cache.entitlement_for(user)
        repo.accounts[user.id] = UserAccount(user_id=user.id, plan=PlanTier.PRO)

        assert (await cache.entitlement_for(user)).plan_tier == PlanTier.FREE
        cache.invalidate(user.id)
        assert (await cache.entitlement_for(user)).plan_tier == PlanTier.PRO


class TestEntitlementGate:
    async def test_unauthenticated_is_denied(self, make_auth_backend):
        gate = await make_gate(make_auth_backend, None, make_cache())

        decision = await gate.check_access()

        assert decision.allowed is False
        assert decision.reason == AccessReason.UNAUTHENTICATED

    async def test_free_user_with_quota_is_allowed(self, make_auth_backend, user: AuthUser):
        gate = await make_gate(make_auth_backend, user, make_cache())

        decision = await gate.check_access()

        assert decision.allowed is True
        assert decision.reason == AccessReason.FREE_TIER_AVAILABLE

    async def test_quota_exhausted_at_cap(self, make_auth_backend, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.accounts[user.id] = UserAccount(user_id=user.id, usage_count=3)
        gate = await make_gate(make_auth_backend, user, make_cache(repo))

        decision = await gate.check_access()

        assert decision.allowed is False
        assert decision.reason == AccessReason.QUOTA_EXHAUSTED
        assert decision.entitlement.used == 3

    async def test_pro_is_allowed_regardless_of_usage(self, make_auth_backend, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.accounts[user.id] = UserAccount(user_id=user.id, plan=PlanTier.PRO, usage_count=500)
        gate = await make_gate(make_auth_backend, user, make_cache(repo))

        decision = await gate.check_access()

        assert decision.allowed is True
        assert decision.reason == AccessReason.PRO_UNLIMITED

    async def test_mid_session_upgrade_is_seen_by_next_check(self, make_auth_backend, user: AuthUser):
        repo = InMemoryAccountRepository()
        repo.accounts[user.id] = UserAccount(user_id=user.id, usage_count=3)
        cache = make_cache(repo)
        gate = await make_gate(make_auth_backend, user, cache)
        assert (await gate.check_access()).allowed is False

        await cache.set_plan(user.id, PlanTier.PRO)

        assert (await gate.check_access()).allowed is True

    async def test_waits_for_loading_session(self, make_auth_backend, user: AuthUser):
        backend = make_auth_backend(user)
        backend.hold_lookup()
        session = AuthSessionBootstrapper(backend)
        gate = EntitlementGate(session, make_cache())
        start = asyncio.create_task(session.start())
        check = asyncio.create_task(gate.check_access())
        await asyncio.sleep(0)
        assert not check.done()

        backend.release_lookup()
        await start
        decision = await check

        assert decision.allowed is True

    async def test_check_pro_requires_pro_plan(self, make_auth_backend, user: AuthUser):
        gate = await make_gate(make_auth_backend, user, make_cache())

        decision = await gate.check_pro()

        assert decision.allowed is False
        assert decision.reason == AccessReason.PRO_REQUIRED


class TestSupabaseAccountRepository:
    def _client(self, rows: list[dict]) -> MagicMock:
        query = MagicMock()
        for method in ("select", "eq", "limit", "upsert"):
            getattr(query, method).return_value = query
        query.execute = AsyncMock(return_value=MagicMock(data=rows))
        client = MagicMock()
        client.table.return_value = query
        return client

    async def test_get_account_parses_row(self):
        client = self._client([{"user_id": "user-1", "plan": "pro", "usage_count": 4}])

        account = await SupabaseAccountRepository(client).get_account("user-1")

        assert account == UserAccount(user_id="user-1", plan=PlanTier.PRO, usage_count=4)
        client.table.assert_called_with("user_accounts")
        client.table.return_value.eq.assert_called_with("user_id", "user-1")

    async def test_get_account_missing_is_none(self):
        assert await SupabaseAccountRepository(self._client([])).get_account("user-1") is None

    async def test_upsert_conflicts_on_user_id(self):
        client = self._client([])
        account = UserAccount(user_id="user-1", usage_count=2)

        stored = await SupabaseAccountRepository(client).upsert_account(account)

        assert stored == account
        client.table.return_value.upsert.assert_called_once_with(
            {"user_id": "user-1", "plan": "free", "usage_count": 2}, on_conflict="user_id"
        )
