"""
Post-checkout subscription reconciliation.

The subscription row is written by the Stripe webhook, asynchronously and
outside the client's control, so a single check right after the redirect is
unreliable. The reconciler polls the row on a bounded, increasing schedule:

    wait 5.0s -> check -> wait 7.5s -> check -> wait 11.25s -> check

``active`` or ``trialing`` confirms the upgrade: the cached plan flips to pro
at once, and a forced re-fetch shortly afterwards corrects any divergence.
If no round observes an active row the plan is left alone and the caller
gets a non-fatal "verification pending" notice. The plan is never upgraded
on the strength of the redirect parameters alone.
"""

import asyncio

import structlog

from botanicmd.config import ReconcilerConfig
from botanicmd.models.billing import PlanTier, ReconciliationResult, SubscriptionRecord
from botanicmd.models.plant import SupportedLanguage
from botanicmd.services.entitlements import EntitlementCache
from botanicmd.services.polling import RetryPolicy, Sleep, poll_until
from botanicmd.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

_PENDING_NOTICE = {
    SupportedLanguage.EN: (
        "Payment received. We're still verifying your subscription; "
        "Pro will be enabled as soon as it is confirmed."
    ),
    SupportedLanguage.PT: (
        "Pagamento recebido. Ainda estamos verificando sua assinatura; "
        "o Pro será ativado assim que for confirmado."
    ),
}


def pending_notice(language: SupportedLanguage = SupportedLanguage.EN) -> str:
    return _PENDING_NOTICE.get(language, _PENDING_NOTICE[SupportedLanguage.EN])


def _is_active(record: SubscriptionRecord | None) -> bool:
    return record is not None and record.is_active


class SubscriptionReconciler:
    """Confirms a plan upgrade against the webhook-written subscription row."""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        cache: EntitlementCache,
        config: ReconcilerConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.subscriptions = subscriptions
        self.cache = cache
        self.config = config or ReconcilerConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self._sleep = sleep
        self._consumed_sessions: set[str] = set()

    async def reconcile(
        self,
        user_id: str,
        session_id: str,
        language: SupportedLanguage = SupportedLanguage.EN,
    ) -> ReconciliationResult:
        """
        Poll until the subscription is active or the retry budget is spent.

        Each checkout session id is consumed once; a repeated call for the
        same id (page refresh) does not poll again and reports the cached plan.
        """
        log = logger.bind(user_id=user_id, session_id=session_id)

        if session_id in self._consumed_sessions:
            log.info("reconcile_session_already_consumed")
            account = await self.cache.get_account(user_id)
            return ReconciliationResult(plan=account.plan, confirmed=account.plan == PlanTier.PRO)
        self._consumed_sessions.add(session_id)

        log.info("reconcile_started", delays=self.policy.delays())
        result = await poll_until(
            lambda: self.subscriptions.fetch_subscription(user_id),
            _is_active,
            self.policy,
            sleep=self._sleep,
            label="reconcile",
        )

        if not result.satisfied:
            account = await self.cache.get_account(user_id)
            log.warning("reconcile_unconfirmed", attempts=result.attempts)
            return ReconciliationResult(
                plan=account.plan,
                confirmed=False,
                attempts=result.attempts,
                notice=pending_notice(language),
            )

        await self.cache.set_plan(user_id, PlanTier.PRO)
        log.info("reconcile_confirmed", attempts=result.attempts)

        plan = await self.refresh(user_id)
        return ReconciliationResult(plan=plan, confirmed=True, attempts=result.attempts)

    async def refresh(self, user_id: str) -> PlanTier:
        """Forced re-fetch from the source of truth after the local flip."""
        await self._sleep(self.config.refresh_delay_seconds)
        try:
            record = await self.subscriptions.fetch_subscription(user_id)
        except Exception as e:
            # Keep the plan that was just confirmed; the next sync corrects it
            logger.warning("reconcile_refresh_failed", user_id=user_id, error=str(e))
            return (await self.cache.get_account(user_id)).plan

        plan = PlanTier.PRO if _is_active(record) else PlanTier.FREE
        await self.cache.set_plan(user_id, plan)
        if plan != PlanTier.PRO:
            logger.warning("reconcile_refresh_diverged", user_id=user_id, plan=plan.value)
        return plan

    async def sync_without_session(self, user_id: str) -> ReconciliationResult:
        """Success redirect that carries no session id: one sync, no polling."""
        try:
            record = await self.subscriptions.fetch_subscription(user_id)
        except Exception as e:
            logger.warning("plan_sync_failed", user_id=user_id, error=str(e))
            account = await self.cache.get_account(user_id)
            return ReconciliationResult(plan=account.plan, confirmed=False, attempts=1)

        plan = PlanTier.PRO if _is_active(record) else PlanTier.FREE
        await self.cache.set_plan(user_id, plan)
        logger.info("plan_synced", user_id=user_id, plan=plan.value)
        return ReconciliationResult(plan=plan, confirmed=plan == PlanTier.PRO, attempts=1)
