"""
End-to-end client flow: free quota, checkout return, pro upgrade, garden.

Everything below the paid boundary is real; the analyzer and image lookup
are AsyncMocks and storage is in memory.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from botanicmd.config import Settings
from botanicmd.exceptions import AccessDeniedError
from botanicmd.models.billing import (
    AccessReason,
    PlanTier,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from botanicmd.models.plant import Candidate
from botanicmd.models.workflow import Phase
from botanicmd.services.entitlements import InMemoryAccountRepository
from botanicmd.services.subscription_service import InMemorySubscriptionRepository
from botanicmd.session import BotanicSession


class WebhookSleep:
    """Lets the subscription row appear after the Nth wait."""

    def __init__(self):
        self.delays: list[float] = []
        self.actions: dict = {}

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        action = self.actions.get(len(self.delays))
        if action is not None:
            await action()


@pytest.fixture
async def flow(make_auth_backend, user, plant_record):
    subscriptions = InMemorySubscriptionRepository()
    accounts = InMemoryAccountRepository()
    sleep = WebhookSleep()
    analyzer = SimpleNamespace(
        analyze_image=AsyncMock(return_value=plant_record),
        identify_by_name=AsyncMock(return_value=plant_record),
        search_candidates=AsyncMock(return_value=[]),
        ask_expert=AsyncMock(return_value="Bright, indirect light."),
    )
    session = BotanicSession(
        settings=Settings(openai_api_key="sk-test"),
        auth_backend=make_auth_backend(user),
        accounts=accounts,
        subscriptions=subscriptions,
        analyzer=analyzer,
        image_lookup=SimpleNamespace(
            find_image=AsyncMock(return_value="https://img.test/p.jpg"),
            find_first=AsyncMock(return_value="https://img.test/p.jpg"),
            close=AsyncMock(),
        ),
        sleep=sleep,
    )
    await session.start()
    yield SimpleNamespace(
        session=session,
        subscriptions=subscriptions,
        accounts=accounts,
        analyzer=analyzer,
        sleep=sleep,
    )
    await session.aclose()


class TestFreeToProFlow:
    async def test_quota_then_upgrade_then_garden(self, flow, user, jpeg_bytes):
        workflow = flow.session.workflow

        for _ in range(3):
            attempt = await workflow.submit_image(jpeg_bytes, "image/jpeg")
            assert attempt.phase == Phase.SUCCESS
        identified = attempt.result

        with pytest.raises(AccessDeniedError) as exc_info:
            await workflow.submit_image(jpeg_bytes, "image/jpeg")
        assert exc_info.value.decision.reason == AccessReason.QUOTA_EXHAUSTED
        assert flow.analyzer.analyze_image.await_count == 3

        with pytest.raises(AccessDeniedError):
            await flow.session.garden.save(user, identified)

        async def _webhook():
            await flow.subscriptions.upsert(
                SubscriptionRecord(
                    user_id=user.id,
                    status=SubscriptionStatus.ACTIVE,
                    plan_type=PlanType.MONTHLY,
                    stripe_customer_id="cus_1",
                )
            )

        flow.sleep.actions = {2: _webhook}
        outcome = await flow.session.handle_checkout_return(
            "https://app.test/app?session_id=cs_test_123&status=success"
        )

        assert outcome.clean_url == "https://app.test/app"
        assert outcome.result.confirmed is True
        assert outcome.result.attempts == 2
        assert flow.sleep.delays == [5.0, 7.5, 1.0]
        assert flow.accounts.accounts[user.id].plan == PlanTier.PRO

        attempt = await workflow.submit_image(jpeg_bytes, "image/jpeg")
        assert attempt.phase == Phase.SUCCESS

        plants = await flow.session.garden.save(user, attempt.result, image="https://img.test/p.jpg")
        assert len(plants) == 1
        assert plants[0].data.common_name == "Monstera"

    async def test_reload_after_checkout_does_not_poll_again(self, flow, user):
        await flow.subscriptions.upsert(
            SubscriptionRecord(user_id=user.id, status=SubscriptionStatus.ACTIVE, plan_type=PlanType.ANNUAL)
        )
        url = "https://app.test/app?session_id=cs_test_123&status=success"

        first = await flow.session.handle_checkout_return(url)
        waits = len(flow.sleep.delays)
        second = await flow.session.handle_checkout_return(url)

        assert first.result.confirmed is True
        assert second.result.plan == PlanTier.PRO
        assert len(flow.sleep.delays) == waits


class TestTextSearchFlow:
    async def test_disambiguation_counts_one_identification(self, flow, user, make_plant_record):
        flow.analyzer.search_candidates.return_value = [
            Candidate(common_name="Garden rose", scientific_name="Rosa hybrida"),
            Candidate(common_name="Damask rose", scientific_name="Rosa damascena"),
            Candidate(common_name="Dog rose", scientific_name="Rosa canina"),
        ]
        flow.analyzer.identify_by_name.return_value = make_plant_record("Damask rose", "Rosa damascena")
        workflow = flow.session.workflow

        selecting = await workflow.submit_query("rose")
        assert selecting.phase == Phase.SELECTING
        assert len(selecting.candidates) == 3

        resolved = await workflow.select_candidate(1)

        assert resolved.result.scientific_name == "Rosa damascena"
        assert flow.accounts.accounts[user.id].usage_count == 1
        assert [e.plant_name for e in flow.session.history.get_history()] == ["Damask rose"]

        answer = await workflow.ask_expert("Where should it grow?")
        assert answer == "Bright, indirect light."
        assert flow.accounts.accounts[user.id].usage_count == 1
